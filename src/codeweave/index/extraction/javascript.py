"""JavaScript and TypeScript extractor.

Handles:
- Function declarations, classes and their methods
- ``const f = () => ...`` / ``const f = function () ...`` as functions
- ES imports (default, named, namespace) and CommonJS ``require``
- Call sites, attributed to the innermost enclosing function or class

Module names are workspace-relative paths without extension; ``index`` files
name their directory.
"""

from __future__ import annotations

import posixpath
from typing import TYPE_CHECKING

from codeweave.index.extraction.base import (
    FileContext,
    LanguageExtractor,
    header_text,
    node_text,
    signature_hash,
)
from codeweave.store.models import SymbolKind

if TYPE_CHECKING:
    from tree_sitter import Node

SOURCE_SUFFIXES = (".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".mts", ".cts")

_FUNCTION_VALUES = frozenset(
    {"arrow_function", "function_expression", "function", "generator_function"}
)
_CLASS_TYPES = frozenset({"class_declaration", "abstract_class_declaration", "class"})
_FUNCTION_TYPES = frozenset({"function_declaration", "generator_function_declaration"})

# Host globals whose calls never resolve into the workspace
_GLOBALS = frozenset(
    {
        "console",
        "Math",
        "JSON",
        "Object",
        "Array",
        "Promise",
        "Number",
        "String",
        "Boolean",
        "Date",
        "RegExp",
        "Error",
        "Symbol",
        "Reflect",
        "Map",
        "Set",
        "window",
        "document",
        "process",
        "globalThis",
        "require",
        "setTimeout",
        "setInterval",
        "clearTimeout",
        "clearInterval",
        "parseInt",
        "parseFloat",
        "isNaN",
        "fetch",
        "super",
    }
)


def _strip_suffix(path: str) -> str:
    for suffix in SOURCE_SUFFIXES:
        if path.endswith(suffix):
            return path[: -len(suffix)]
    return path


def _string_value(node: Node | None) -> str | None:
    if node is None or node.type not in ("string", "template_string"):
        return None
    text = node_text(node)
    return text[1:-1] if len(text) >= 2 else None


def _member_parts(node: Node | None) -> list[str] | None:
    """["a", "b", "c"] for ``a.b.c``; None for computed or call-based receivers."""
    if node is None:
        return None
    if node.type in ("identifier", "this", "super"):
        return [node_text(node)]
    if node.type == "member_expression":
        obj = _member_parts(node.child_by_field_name("object"))
        prop = node.child_by_field_name("property")
        if obj is None or prop is None:
            return None
        return [*obj, node_text(prop)]
    return None


def _jsdoc(node: Node) -> str | None:
    prev = node.prev_named_sibling
    if prev is not None and prev.type == "comment":
        text = node_text(prev)
        if text.startswith("/**"):
            body = [
                line.strip().lstrip("*").strip()
                for line in text[3:-2].splitlines()
            ]
            summary = " ".join(line for line in body if line and not line.startswith("@"))
            return summary or None
    return None


class JavaScriptExtractor(LanguageExtractor):
    language = "javascript"
    extensions = (".js", ".jsx", ".mjs", ".cjs")
    grammar_module = "tree_sitter_javascript"
    receiver_names = frozenset({"this"})
    skip_call_names = _GLOBALS

    def module_name_for(self, file_path: str) -> str:
        stem = _strip_suffix(file_path)
        if stem.endswith("/index"):
            return stem[: -len("/index")]
        return stem

    def resolve_specifier(self, file_path: str, spec: str) -> str:
        """Workspace module name for a relative specifier; bare specifiers pass through."""
        if not spec.startswith("."):
            return spec
        joined = posixpath.normpath(posixpath.join(posixpath.dirname(file_path), spec))
        return self.module_name_for(joined)

    def _handle_import(self, ctx: FileContext, node: Node) -> None:
        spec = _string_value(node.child_by_field_name("source"))
        if spec is None:
            return
        module = self.resolve_specifier(ctx.file_path, spec)
        line = node.start_point[0] + 1
        clause = next((c for c in node.named_children if c.type == "import_clause"), None)
        if clause is None:
            ctx.add_import(module, None, line)
            return
        for child in clause.named_children:
            if child.type == "identifier":
                local = node_text(child)
                ctx.add_import(module, local, line)
                ctx.bind(local, module, local)
            elif child.type == "namespace_import":
                ident = next((c for c in child.named_children if c.type == "identifier"), None)
                ctx.add_import(module, None, line)
                if ident is not None:
                    ctx.bind(node_text(ident), module, None)
            elif child.type == "named_imports":
                for spec_node in child.named_children:
                    if spec_node.type != "import_specifier":
                        continue
                    name = node_text(spec_node.child_by_field_name("name"))
                    alias = spec_node.child_by_field_name("alias")
                    ctx.add_import(module, name, line)
                    ctx.bind(node_text(alias) if alias is not None else name, module, name)

    def _require_source(self, node: Node | None) -> str | None:
        if node is None or node.type != "call_expression":
            return None
        fn = node.child_by_field_name("function")
        if fn is None or fn.type != "identifier" or node_text(fn) != "require":
            return None
        args = node.child_by_field_name("arguments")
        first = args.named_children[0] if args is not None and args.named_child_count else None
        return _string_value(first)

    def _handle_require(self, ctx: FileContext, declarator: Node, spec: str) -> None:
        module = self.resolve_specifier(ctx.file_path, spec)
        line = declarator.start_point[0] + 1
        target = declarator.child_by_field_name("name")
        if target is None:
            return
        if target.type == "identifier":
            ctx.add_import(module, None, line)
            ctx.bind(node_text(target), module, None)
        elif target.type == "object_pattern":
            for prop in target.named_children:
                if prop.type == "shorthand_property_identifier_pattern":
                    name = node_text(prop)
                    ctx.add_import(module, name, line)
                    ctx.bind(name, module, name)
                elif prop.type == "pair_pattern":
                    key = node_text(prop.child_by_field_name("key"))
                    value = prop.child_by_field_name("value")
                    ctx.add_import(module, key, line)
                    if value is not None and value.type == "identifier":
                        ctx.bind(node_text(value), module, key)

    def walk(self, ctx: FileContext, root: Node) -> None:
        stack: list[tuple[Node, str, str]] = [
            (child, "", SymbolKind.MODULE.value) for child in reversed(root.children)
        ]
        while stack:
            node, scope, scope_kind = stack.pop()
            t = node.type

            if t == "import_statement":
                self._handle_import(ctx, node)
                continue

            if t == "variable_declarator":
                value = node.child_by_field_name("value")
                spec = self._require_source(value)
                if spec is not None:
                    self._handle_require(ctx, node, spec)
                    continue
                name_node = node.child_by_field_name("name")
                if (
                    value is not None
                    and value.type in _FUNCTION_VALUES
                    and name_node is not None
                    and name_node.type == "identifier"
                ):
                    name = node_text(name_node)
                    qn = f"{scope}.{name}" if scope else name
                    body = value.child_by_field_name("body")
                    ctx.add_symbol(
                        qn,
                        name,
                        SymbolKind.FUNCTION,
                        node,
                        signature_hash(node, self.comment_types),
                        signature=header_text(node, body),
                        docstring=_jsdoc(node.parent) if node.parent is not None else None,
                    )
                    if body is not None:
                        stack.append((body, qn, SymbolKind.FUNCTION.value))
                    continue

            if t in _FUNCTION_TYPES or t in _CLASS_TYPES or t == "method_definition":
                name_node = node.child_by_field_name("name")
                body = node.child_by_field_name("body")
                if name_node is not None:
                    name = node_text(name_node)
                    qn = f"{scope}.{name}" if scope else name
                    if t in _CLASS_TYPES:
                        kind = SymbolKind.CLASS
                    elif t == "method_definition" or scope_kind == SymbolKind.CLASS.value:
                        kind = SymbolKind.METHOD
                    else:
                        kind = SymbolKind.FUNCTION
                    doc_anchor = node
                    if node.parent is not None and node.parent.type == "export_statement":
                        doc_anchor = node.parent
                    ctx.add_symbol(
                        qn,
                        name,
                        kind,
                        node,
                        signature_hash(node, self.comment_types),
                        signature=header_text(node, body),
                        docstring=_jsdoc(doc_anchor),
                    )
                    heritage = next(
                        (c for c in node.named_children if c.type == "class_heritage"), None
                    )
                    if heritage is not None:
                        stack.append((heritage, scope, scope_kind))
                    if body is not None:
                        stack.append((body, qn, kind.value))
                    continue

            if t == "call_expression":
                line = node.start_point[0] + 1
                spec = self._require_source(node)
                if spec is not None:
                    ctx.add_import(self.resolve_specifier(ctx.file_path, spec), None, line)
                    continue
                parts = _member_parts(node.child_by_field_name("function"))
                if parts:
                    ctx.add_call(scope, parts, line)

            stack.extend((child, scope, scope_kind) for child in reversed(node.children))


class TypeScriptExtractor(JavaScriptExtractor):
    language = "typescript"
    extensions = (".ts", ".tsx", ".mts", ".cts")
    grammar_module = "tree_sitter_typescript"

    def _grammar_for(self, file_path: str) -> tuple[str, str]:
        if file_path.endswith(".tsx"):
            return self.grammar_module, "language_tsx"
        return self.grammar_module, "language_typescript"
