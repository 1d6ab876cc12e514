"""Symbol definitions and lexical usages.

One pass over the syntax tree, driven by an explicit stack so deeply nested
or pathological trees cannot hit the recursion limit. Usages are lexical:
every identifier token spelled like a definition's name, anywhere in the same
file. No scope or type resolution is attempted.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping, Sequence

from tree_sitter import Node

from code_search.schemas.chunking import Location, Symbol, SymbolKind
from code_search.services.languages import LanguageSpec, node_name, symbol_kind, unwrap

__all__ = [
    'Definition',
    'FileScan',
    'scan_tree',
]


@dataclasses.dataclass(frozen=True)
class Definition:
    name: str
    kind: SymbolKind
    line: int  # 0-based row of the declaration node
    column: int
    end_line: int  # 0-based, inclusive
    name_byte: int  # start byte of the name token, excluded from usages


@dataclasses.dataclass(frozen=True)
class FileScan:
    definitions: Sequence[Definition]
    occurrences: Mapping[str, Sequence[tuple[int, int, int]]]  # name -> (row, column, start_byte)

    def to_symbol(self, definition: Definition, documentation: str | None = None) -> Symbol:
        usages = [
            Location(line=row + 1, column=column)
            for row, column, start_byte in self.occurrences.get(definition.name, ())
            if start_byte != definition.name_byte
        ]
        return Symbol(
            name=definition.name,
            kind=definition.kind,
            definition=Location(line=definition.line + 1, column=definition.column),
            end_line=definition.end_line + 1,
            usages=usages,
            documentation=documentation,
        )


def scan_tree(spec: LanguageSpec, root: Node) -> FileScan:
    """Collect definitions and identifier occurrences in source order."""
    definitions: list[Definition] = []
    occurrences: dict[str, list[tuple[int, int, int]]] = {}

    # (node, in_class, in_body): in_body is set inside function-like bodies,
    # where declarations are locals rather than symbols
    stack: list[tuple[Node, bool, bool]] = [(root, False, False)]
    wrapped: set[tuple[int, int, str]] = set()
    while stack:
        node, in_class, in_body = stack.pop()
        node_type = node.type

        if node_type in spec.identifier_kinds and node.text is not None:
            name = node.text.decode('utf-8', errors='replace')
            occurrences.setdefault(name, []).append((node.start_point[0], node.start_point[1], node.start_byte))

        child_in_class, child_in_body = in_class, in_body
        is_chunkable = node_type in spec.chunkable_kinds
        is_declaration = node_type in spec.declaration_kinds and not in_body
        if (is_chunkable or is_declaration) and _key(node) not in wrapped:
            inner = unwrap(spec, node)
            if inner is not node:
                wrapped.add(_key(inner))
            definition = _definition(spec, node, in_class=in_class)
            if definition is not None:
                definitions.append(definition)
            if is_chunkable:
                is_class = inner.type in spec.class_kinds
                child_in_class = is_class
                child_in_body = not (is_class or inner.type in spec.container_kinds)

        for child in reversed(node.children):
            stack.append((child, child_in_class, child_in_body))

    return FileScan(definitions=definitions, occurrences=occurrences)


def _key(node: Node) -> tuple[int, int, str]:
    return node.start_byte, node.end_byte, node.type


def _definition(spec: LanguageSpec, node: Node, *, in_class: bool) -> Definition | None:
    kind = symbol_kind(spec, node, in_class=in_class)
    name_node = node_name(spec, node)
    if kind is None or name_node is None or name_node.text is None:
        return None
    return Definition(
        name=name_node.text.decode('utf-8', errors='replace'),
        kind=kind,
        line=node.start_point[0],
        column=node.start_point[1],
        end_line=node.end_point[0],
        name_byte=name_node.start_byte,
    )
