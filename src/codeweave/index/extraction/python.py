"""Python extractor.

Handles:
- Functions, classes and methods (decorated or not), nested definitions
- ``import a.b as c`` and ``from .x import y as z`` bindings, with relative
  imports normalized against the file's package
- Call sites, attributed to the innermost enclosing function or class
"""

from __future__ import annotations

import builtins
from pathlib import PurePosixPath
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

_BUILTIN_NAMES = frozenset(dir(builtins))


def _first_line(text: str) -> str:
    return text.strip().split("\n\n", 1)[0].strip()


def _docstring(body: Node | None) -> str | None:
    if body is None:
        return None
    for child in body.named_children:
        if child.type == "comment":
            continue
        if child.type == "expression_statement" and child.named_child_count:
            expr = child.named_children[0]
            if expr.type == "string":
                raw = node_text(expr)
                for quote in ('"""', "'''", '"', "'"):
                    start = raw.find(quote)
                    if start != -1 and raw.endswith(quote):
                        return _first_line(raw[start + len(quote) : len(raw) - len(quote)]) or None
        return None
    return None


def _dotted_parts(node: Node | None) -> list[str] | None:
    """["a", "b", "c"] for ``a.b.c``; None for anything that is not a plain chain."""
    if node is None:
        return None
    if node.type == "identifier":
        return [node_text(node)]
    if node.type == "attribute":
        obj = _dotted_parts(node.child_by_field_name("object"))
        attr = node.child_by_field_name("attribute")
        if obj is None or attr is None:
            return None
        return [*obj, node_text(attr)]
    return None


class PythonExtractor(LanguageExtractor):
    language = "python"
    extensions = (".py", ".pyi")
    grammar_module = "tree_sitter_python"
    receiver_names = frozenset({"self", "cls"})
    skip_call_names = _BUILTIN_NAMES

    def module_name_for(self, file_path: str) -> str:
        path = PurePosixPath(file_path)
        parts = list(path.with_suffix("").parts)
        if parts and parts[0] == "src" and len(parts) > 1:
            parts = parts[1:]
        if parts and parts[-1] == "__init__" and len(parts) > 1:
            parts = parts[:-1]
        return ".".join(parts)

    def module_docstring(self, root: Node) -> str | None:
        return _docstring(root)

    def _package_parts(self, file_path: str, module_name: str) -> list[str]:
        parts = module_name.split(".")
        if PurePosixPath(file_path).stem == "__init__":
            return parts
        return parts[:-1]

    def _resolve_relative(self, ctx: FileContext, node: Node) -> str:
        """Absolute module name for a ``relative_import`` node."""
        prefix = ""
        dotted = ""
        for child in node.children:
            if child.type == "import_prefix":
                prefix = node_text(child)
            elif child.type == "dotted_name":
                dotted = node_text(child)
        package = self._package_parts(ctx.file_path, ctx.module_name)
        up = len(prefix) - 1
        base = package[: len(package) - up] if up <= len(package) else []
        return ".".join([*base, dotted] if dotted else base)

    def _handle_import(self, ctx: FileContext, node: Node) -> None:
        line = node.start_point[0] + 1
        for child in node.named_children:
            if child.type == "dotted_name":
                module = node_text(child)
                ctx.add_import(module, None, line)
                head = module.split(".")[0]
                ctx.bind(head, head, None)
            elif child.type == "aliased_import":
                module = node_text(child.child_by_field_name("name"))
                alias = node_text(child.child_by_field_name("alias"))
                ctx.add_import(module, None, line)
                ctx.bind(alias, module, None)

    def _handle_import_from(self, ctx: FileContext, node: Node) -> None:
        line = node.start_point[0] + 1
        module_node = node.child_by_field_name("module_name")
        if module_node is None:
            return
        if module_node.type == "relative_import":
            module = self._resolve_relative(ctx, module_node)
        else:
            module = node_text(module_node)
        if not module or module == "__future__":
            return

        names = node.children_by_field_name("name")
        if not names:
            # from x import *
            ctx.add_import(module, "*", line)
            return
        for name_node in names:
            if name_node.type == "aliased_import":
                name = node_text(name_node.child_by_field_name("name"))
                local = node_text(name_node.child_by_field_name("alias"))
            else:
                name = node_text(name_node)
                local = name.split(".")[-1]
            ctx.add_import(module, name, line)
            ctx.bind(local, module, name)

    def walk(self, ctx: FileContext, root: Node) -> None:
        # (node, enclosing qualified name, enclosing kind, start line override)
        stack: list[tuple[Node, str, str, int | None]] = [
            (child, "", SymbolKind.MODULE.value, None) for child in reversed(root.children)
        ]
        while stack:
            node, scope, scope_kind, start_override = stack.pop()
            t = node.type

            if t == "decorated_definition":
                definition = node.child_by_field_name("definition")
                children: list[tuple[Node, str, str, int | None]] = []
                for child in node.children:
                    if child.type == "decorator":
                        children.append((child, scope, scope_kind, None))
                if definition is not None:
                    children.append((definition, scope, scope_kind, node.start_point[0] + 1))
                stack.extend(reversed(children))
                continue

            if t in ("function_definition", "class_definition"):
                name = node_text(node.child_by_field_name("name"))
                body = node.child_by_field_name("body")
                if not name:
                    continue
                qn = f"{scope}.{name}" if scope else name
                if t == "class_definition":
                    kind = SymbolKind.CLASS
                elif scope_kind == SymbolKind.CLASS.value:
                    kind = SymbolKind.METHOD
                else:
                    kind = SymbolKind.FUNCTION
                ctx.add_symbol(
                    qn,
                    name,
                    kind,
                    node,
                    signature_hash(node, self.comment_types),
                    signature=header_text(node, body),
                    docstring=_docstring(body),
                    start_line=start_override,
                )
                # Defaults, annotations and base classes evaluate in the enclosing scope
                for field_name in ("parameters", "superclasses", "return_type"):
                    sub = node.child_by_field_name(field_name)
                    if sub is not None:
                        stack.append((sub, scope, scope_kind, None))
                if body is not None:
                    stack.append((body, qn, kind.value, None))
                continue

            if t == "import_statement":
                self._handle_import(ctx, node)
                continue
            if t == "import_from_statement":
                self._handle_import_from(ctx, node)
                continue

            if t == "call":
                parts = _dotted_parts(node.child_by_field_name("function"))
                if parts:
                    ctx.add_call(scope, parts, node.start_point[0] + 1)

            stack.extend((child, scope, scope_kind, None) for child in reversed(node.children))
