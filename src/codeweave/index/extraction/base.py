"""Language extractor protocol and shared extraction machinery.

An extractor turns one file's content into symbols, file-local call edges,
import references and entanglement hints. It is a pure function of the
content and the grammar: it never touches storage. Unparseable input yields
zero symbols plus a warning instead of an exception, so the indexer can
record ``status=warning`` and move on.

Call edges are classified here:
- a call to a name defined in the same file (or ``self.method`` within the
  defining class) is ``intra-file`` and resolved on the spot
- a call through an imported binding keeps the import's module and the
  dotted remainder as its reference, for the cross-file resolver
- anything else is stored as an unqualified name
"""

from __future__ import annotations

import hashlib
import importlib
import itertools
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import tree_sitter

from codeweave.core.errors import ParseFailure
from codeweave.store.models import EdgeKind, SymbolKind, format_ref

if TYPE_CHECKING:
    from tree_sitter import Node, Tree

MAX_ERROR_RATIO = 0.10


def symbol_id(file_path: str, kind: str, qualified_name: str) -> str:
    """Stable symbol identity, derived from path, kind and name only."""
    return hashlib.sha256(f"{file_path}:{kind}:{qualified_name}".encode()).hexdigest()[:16]


def edge_id(caller_id: str, callee_ref: str, line: int) -> str:
    return hashlib.sha256(f"{caller_id}->{callee_ref}@{line}".encode()).hexdigest()[:16]


def import_id(file_path: str, module_ref: str, imported_name: str | None, line: int) -> str:
    key = f"{file_path}:{module_ref}:{imported_name or ''}@{line}"
    return hashlib.sha256(key.encode()).hexdigest()[:16]


# =============================================================================
# Extraction Result Dataclasses
# =============================================================================


@dataclass
class ExtractedSymbol:
    id: str
    name: str
    qualified_name: str
    kind: str
    start_line: int
    end_line: int
    signature_hash: str
    signature: str | None = None
    docstring: str | None = None


@dataclass
class LocalCallEdge:
    """A call site. ``resolved_callee_id`` is set only for intra-file targets."""

    id: str
    caller_id: str
    callee_module: str | None
    callee_name: str
    kind: str
    line: int
    resolved_callee_id: str | None = None

    @property
    def resolved(self) -> bool:
        return self.resolved_callee_id is not None

    @property
    def callee_ref(self) -> str:
        return format_ref(self.callee_module, self.callee_name)


@dataclass
class ImportReference:
    id: str
    module_ref: str
    imported_name: str | None
    line: int


@dataclass
class EntanglementHint:
    """Two callees invoked by the same callers. Strength counts those callers."""

    ref_a: str
    ref_b: str
    strength: int


@dataclass
class ExtractionResult:
    file_path: str
    language: str
    module_name: str
    symbols: list[ExtractedSymbol] = field(default_factory=list)
    call_edges: list[LocalCallEdge] = field(default_factory=list)
    imports: list[ImportReference] = field(default_factory=list)
    entanglement_hints: list[EntanglementHint] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ParsedFile:
    tree: Tree
    root: Node
    error_count: int
    total_nodes: int

    @property
    def error_ratio(self) -> float:
        return self.error_count / self.total_nodes if self.total_nodes else 0.0


# =============================================================================
# Token helpers
# =============================================================================


def node_text(node: Node | None) -> str:
    if node is None or node.text is None:
        return ""
    return node.text.decode("utf-8", errors="replace")


def token_stream(node: Node, comment_types: frozenset[str]) -> list[str]:
    """Leaf token texts under ``node`` in source order, comments excluded."""
    tokens: list[str] = []
    stack = [node]
    while stack:
        current = stack.pop()
        if current.type in comment_types:
            continue
        if current.child_count == 0:
            text = node_text(current).strip()
            if text:
                tokens.append(text)
            continue
        stack.extend(reversed(current.children))
    return tokens


def signature_hash(node: Node, comment_types: frozenset[str]) -> str:
    """Fingerprint of the normalized token stream; insensitive to whitespace and line drift."""
    return hashlib.sha256(" ".join(token_stream(node, comment_types)).encode()).hexdigest()[:16]


def header_text(node: Node, body: Node | None, limit: int = 200) -> str:
    """Declaration text up to the body, whitespace collapsed."""
    raw = node.text or b""
    if body is not None:
        raw = raw[: max(body.start_byte - node.start_byte, 0)]
    text = " ".join(raw.decode("utf-8", errors="replace").split()).rstrip(" :{")
    return text[:limit]


# =============================================================================
# Per-file working state
# =============================================================================


@dataclass
class Binding:
    """A local name introduced by an import. ``name`` is None for module bindings."""

    module: str
    name: str | None


@dataclass
class _RawCall:
    caller_qn: str
    parts: list[str]
    line: int


class FileContext:
    """Symbols, bindings and raw call sites collected while walking one file."""

    def __init__(self, file_path: str, module_name: str, receiver_names: frozenset[str]) -> None:
        self.file_path = file_path
        self.module_name = module_name
        self.receiver_names = receiver_names
        self.module_symbol: ExtractedSymbol | None = None
        self.symbols: dict[str, ExtractedSymbol] = {}
        self.bindings: dict[str, Binding] = {}
        self.imports: dict[str, ImportReference] = {}
        self.warnings: list[str] = []
        self._calls: list[_RawCall] = []

    def add_symbol(
        self,
        qualified_name: str,
        name: str,
        kind: SymbolKind,
        node: Node,
        sig_hash: str,
        signature: str | None = None,
        docstring: str | None = None,
        start_line: int | None = None,
    ) -> bool:
        """Record a symbol. The first definition of a qualified name wins."""
        if qualified_name in self.symbols:
            self.warnings.append(
                f"duplicate definition of {qualified_name} "
                f"at line {node.start_point[0] + 1} ignored"
            )
            return False
        self.symbols[qualified_name] = ExtractedSymbol(
            id=symbol_id(self.file_path, kind.value, qualified_name),
            name=name,
            qualified_name=qualified_name,
            kind=kind.value,
            start_line=start_line if start_line is not None else node.start_point[0] + 1,
            end_line=node.end_point[0] + 1,
            signature_hash=sig_hash,
            signature=signature,
            docstring=docstring,
        )
        return True

    def add_import(self, module_ref: str, imported_name: str | None, line: int) -> None:
        ref = ImportReference(
            id=import_id(self.file_path, module_ref, imported_name, line),
            module_ref=module_ref,
            imported_name=imported_name,
            line=line,
        )
        self.imports.setdefault(ref.id, ref)

    def bind(self, local: str, module: str, name: str | None) -> None:
        self.bindings[local] = Binding(module=module, name=name)

    def add_call(self, caller_qn: str, parts: list[str], line: int) -> None:
        self._calls.append(_RawCall(caller_qn=caller_qn, parts=parts, line=line))

    # Resolution of collected calls, after every symbol of the file is known

    def _local_function(self, caller_qn: str, name: str) -> ExtractedSymbol | None:
        """Innermost definition of ``name`` visible from the caller, skipping class scopes."""
        scope = caller_qn
        while True:
            candidate = f"{scope}.{name}" if scope else name
            sym = self.symbols.get(candidate)
            if sym is not None and sym.kind != SymbolKind.METHOD.value:
                return sym
            if not scope:
                return None
            scope = scope.rpartition(".")[0]

    def _enclosing_class(self, caller_qn: str) -> str | None:
        scope = caller_qn
        while scope:
            sym = self.symbols.get(scope)
            if sym is not None and sym.kind == SymbolKind.CLASS.value:
                return scope
            scope = scope.rpartition(".")[0]
        return None

    def _classify(
        self, call: _RawCall, skip_names: frozenset[str]
    ) -> tuple[str | None, str, str | None] | None:
        """(callee_module, callee_name, local target id) for a call, or None to drop it."""
        head, rest = call.parts[0], call.parts[1:]

        if not rest:
            local = self._local_function(call.caller_qn, head)
            if local is not None:
                return None, local.qualified_name, local.id
            binding = self.bindings.get(head)
            if binding is not None:
                if binding.name is None:
                    return None, head, None
                return binding.module, binding.name, None
            if head in skip_names:
                return None
            return None, head, None

        if head in self.receiver_names:
            cls = self._enclosing_class(call.caller_qn)
            if cls is not None and len(rest) == 1:
                target = self.symbols.get(f"{cls}.{rest[0]}")
                if target is not None:
                    return None, target.qualified_name, target.id
            return None, rest[-1], None

        binding = self.bindings.get(head)
        if binding is not None:
            tail = ".".join(rest)
            name = f"{binding.name}.{tail}" if binding.name else tail
            return binding.module, name, None

        local = self.symbols.get(".".join(call.parts))
        if local is not None:
            return None, local.qualified_name, local.id
        # Attribute call on an unbound receiver (items.append): the target is unknowable
        return None

    def build(self, language: str, skip_names: frozenset[str]) -> ExtractionResult:
        edges: dict[str, LocalCallEdge] = {}
        co_called: dict[str, set[str]] = {}
        module_sym = self.module_symbol

        for call in self._calls:
            caller = self.symbols.get(call.caller_qn) if call.caller_qn else module_sym
            if caller is None:
                continue
            classified = self._classify(call, skip_names)
            if classified is None:
                continue
            callee_module, callee_name, local_id = classified
            ref = format_ref(callee_module, callee_name)
            edge = LocalCallEdge(
                id=edge_id(caller.id, ref, call.line),
                caller_id=caller.id,
                callee_module=callee_module,
                callee_name=callee_name,
                kind=(EdgeKind.INTRA_FILE if local_id else EdgeKind.CROSS_FILE).value,
                line=call.line,
                resolved_callee_id=local_id,
            )
            edges.setdefault(edge.id, edge)
            co_called.setdefault(caller.id, set()).add(ref)

        pair_counts: Counter[tuple[str, str]] = Counter()
        for refs in co_called.values():
            for a, b in itertools.combinations(sorted(refs), 2):
                pair_counts[(a, b)] += 1

        return ExtractionResult(
            file_path=self.file_path,
            language=language,
            module_name=self.module_name,
            symbols=([module_sym] if module_sym else []) + list(self.symbols.values()),
            call_edges=list(edges.values()),
            imports=list(self.imports.values()),
            entanglement_hints=[
                EntanglementHint(ref_a=a, ref_b=b, strength=n)
                for (a, b), n in sorted(pair_counts.items())
            ],
            warnings=self.warnings,
        )


# =============================================================================
# Extractor base class
# =============================================================================


class LanguageExtractor(ABC):
    """Base class for tree-sitter backed extractors.

    Subclasses supply the grammar, module naming and the tree walk; this class
    handles parsing, error-ratio validation and graceful degradation.
    """

    language: str = ""
    extensions: tuple[str, ...] = ()
    grammar_module: str = ""
    grammar_func: str = "language"
    comment_types: frozenset[str] = frozenset({"comment"})
    receiver_names: frozenset[str] = frozenset()
    skip_call_names: frozenset[str] = frozenset()

    def __init__(self, max_error_ratio: float = MAX_ERROR_RATIO) -> None:
        self.max_error_ratio = max_error_ratio
        self._languages: dict[str, Any] = {}

    def _grammar_for(self, file_path: str) -> tuple[str, str]:
        """(grammar module, language function) for a path."""
        return self.grammar_module, self.grammar_func

    def _get_language(self, file_path: str) -> Any:
        module_name, func_name = self._grammar_for(file_path)
        key = f"{module_name}.{func_name}"
        if key not in self._languages:
            try:
                mod = importlib.import_module(module_name)
                self._languages[key] = tree_sitter.Language(getattr(mod, func_name)())
            except (ImportError, AttributeError) as err:
                raise ParseFailure.for_file(
                    file_path, f"grammar {module_name} unavailable"
                ) from err
        return self._languages[key]

    def parse(self, file_path: str, content: bytes) -> ParsedFile:
        parser = tree_sitter.Parser(self._get_language(file_path))
        tree = parser.parse(content)

        error_count = 0
        total_nodes = 0
        stack = [tree.root_node]
        while stack:
            node = stack.pop()
            total_nodes += 1
            if node.type == "ERROR" or node.is_missing:
                error_count += 1
            stack.extend(node.children)

        return ParsedFile(
            tree=tree, root=tree.root_node, error_count=error_count, total_nodes=total_nodes
        )

    def extract(self, file_path: str, content: bytes) -> ExtractionResult:
        """Extract symbols and local edges. Never raises for bad input."""
        module_name = self.module_name_for(file_path)
        try:
            parsed = self.parse(file_path, content)
            if parsed.error_ratio >= self.max_error_ratio:
                raise ParseFailure.for_file(
                    file_path,
                    f"{parsed.error_count}/{parsed.total_nodes} error nodes "
                    f"({parsed.error_ratio:.0%})",
                )
        except ParseFailure as e:
            return ExtractionResult(
                file_path=file_path,
                language=self.language,
                module_name=module_name,
                warnings=[e.message],
            )

        ctx = FileContext(file_path, module_name, self.receiver_names)
        root = parsed.root
        ctx.module_symbol = ExtractedSymbol(
            id=symbol_id(file_path, SymbolKind.MODULE.value, module_name),
            name=module_name.rpartition(".")[2].rpartition("/")[2] or module_name,
            qualified_name=module_name,
            kind=SymbolKind.MODULE.value,
            start_line=1,
            end_line=root.end_point[0] + 1,
            signature_hash=signature_hash(root, self.comment_types),
            docstring=self.module_docstring(root),
        )
        self.walk(ctx, root)
        if parsed.error_count:
            ctx.warnings.append(
                f"{parsed.error_count} syntax error node(s); extracted what parsed"
            )
        return ctx.build(self.language, self.skip_call_names)

    def module_docstring(self, root: Node) -> str | None:
        return None

    @abstractmethod
    def module_name_for(self, file_path: str) -> str:
        """Module identity of a workspace-relative posix path."""
        ...

    @abstractmethod
    def walk(self, ctx: FileContext, root: Node) -> None:
        """Populate ``ctx`` with symbols, bindings, imports and raw calls."""
        ...
