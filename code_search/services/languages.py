"""Per-language chunking strategy table.

Each supported language is one LanguageSpec entry: which tree-sitter grammar
to load, which node kinds are chunk boundaries, which are declarations subject
to keep/batch, which containers may be split open when oversize, and how to
find a node's name. Adding a language means adding an entry here.
"""

from __future__ import annotations

import dataclasses
import functools
import importlib
import logging
import re
import threading
from collections.abc import Callable, Mapping
from pathlib import PurePosixPath

from tree_sitter import Language, Node, Parser

from code_search.schemas.chunking import SymbolKind

__all__ = [
    'EXTENSION_MAP',
    'LANGUAGES',
    'LanguageSpec',
    'get_parser',
    'language_for_path',
    'node_name',
    'resolve_language',
    'symbol_kind',
    'unwrap',
]

logger = logging.getLogger(__name__)

C_FAMILY_COMMENTS = ('//', '/*', '*', '*/')
HASH_COMMENTS = ('#',)

# Typedefs, using-aliases, enums, structs and unions are kept even when small
DEFAULT_NAMED_FORM = re.compile(r'^\s*(?:export\s+)?(?:typedef|type|using\s+\w+\s*=|enum|struct|union)\b')

_DECLARATOR_LEAVES = frozenset({
    'identifier',
    'field_identifier',
    'type_identifier',
    'qualified_identifier',
    'destructor_name',
    'operator_name',
})


@dataclasses.dataclass(frozen=True, kw_only=True)
class LanguageSpec:
    """Chunking strategy data for one language."""

    language_id: str
    grammar_module: str  # importable tree-sitter binding, e.g. 'tree_sitter_cpp'
    grammar_function: str = 'language'
    chunkable_kinds: frozenset[str]
    declaration_kinds: frozenset[str] = frozenset()
    container_kinds: frozenset[str] = frozenset()  # may be split open when oversize
    class_kinds: frozenset[str] = frozenset()  # functions nested inside become methods
    wrapper_fields: Mapping[str, str | None] = dataclasses.field(default_factory=dict)
    symbol_kinds: Mapping[str, SymbolKind]
    identifier_kinds: frozenset[str] = frozenset({'identifier'})
    comment_prefixes: tuple[str, ...] = C_FAMILY_COMMENTS
    named_form: re.Pattern[str] = DEFAULT_NAMED_FORM
    name_resolver: Callable[[Node], Node | None] | None = None

    def is_comment_line(self, stripped: str) -> bool:
        return stripped.startswith(self.comment_prefixes)


# --- Name accessors ---


def _declarator_leaf(node: Node | None) -> Node | None:
    """Follow C-style declarator chains down to the declared name."""
    current = node
    while current is not None:
        if current.type in _DECLARATOR_LEAVES:
            return current
        inner = current.child_by_field_name('declarator')
        if inner is None:
            named = [c for c in current.named_children if c.type != 'parameter_list']
            inner = named[-1] if named else None
        current = inner
    return None


def _first_child_name(node: Node, child_types: frozenset[str]) -> Node | None:
    for child in node.named_children:
        if child.type in child_types:
            return child.child_by_field_name('name')
    return None


def _cpp_name(node: Node) -> Node | None:
    if node.type in ('function_definition', 'declaration', 'field_declaration', 'type_definition'):
        return _declarator_leaf(node.child_by_field_name('declarator'))
    return node.child_by_field_name('name')


def _python_name(node: Node) -> Node | None:
    return node.child_by_field_name('name')


def _js_name(node: Node) -> Node | None:
    if node.type == 'arrow_function':
        parent = node.parent
        if parent is not None and parent.type == 'variable_declarator':
            return parent.child_by_field_name('name')
        return None
    if node.type in ('lexical_declaration', 'variable_declaration'):
        return _first_child_name(node, frozenset({'variable_declarator'}))
    return node.child_by_field_name('name')


def _go_name(node: Node) -> Node | None:
    match node.type:
        case 'type_declaration':
            return _first_child_name(node, frozenset({'type_spec', 'type_alias'}))
        case 'var_declaration':
            return _first_child_name(node, frozenset({'var_spec'}))
        case 'const_declaration':
            return _first_child_name(node, frozenset({'const_spec'}))
    return node.child_by_field_name('name')


def _rust_name(node: Node) -> Node | None:
    if node.type == 'impl_item':
        return node.child_by_field_name('type')
    return node.child_by_field_name('name')


def _field_declaration_name(node: Node) -> Node | None:
    """Java and C# fields: the first declarator's name."""
    name = node.child_by_field_name('name')
    if name is not None:
        return name
    stack = list(reversed(node.named_children))
    while stack:
        current = stack.pop()
        if current.type == 'variable_declarator':
            return current.child_by_field_name('name') or next(
                (c for c in current.named_children if c.type == 'identifier'), None
            )
        stack.extend(reversed(current.named_children))
    return None


def _scala_name(node: Node) -> Node | None:
    if node.type in ('val_definition', 'var_definition'):
        pattern = node.child_by_field_name('pattern')
        return pattern if pattern is not None and pattern.type == 'identifier' else None
    return node.child_by_field_name('name')


# --- Table ---

_CPP = LanguageSpec(
    language_id='cpp',
    grammar_module='tree_sitter_cpp',
    chunkable_kinds=frozenset({
        'function_definition',
        'class_specifier',
        'struct_specifier',
        'enum_specifier',
        'union_specifier',
        'namespace_definition',
        'template_declaration',
        'type_definition',
        'alias_declaration',
    }),
    declaration_kinds=frozenset({'declaration', 'field_declaration'}),
    container_kinds=frozenset({
        'namespace_definition',
        'class_specifier',
        'struct_specifier',
        'union_specifier',
        'template_declaration',
    }),
    class_kinds=frozenset({'class_specifier', 'struct_specifier', 'union_specifier'}),
    wrapper_fields={'template_declaration': None},
    symbol_kinds={
        'function_definition': 'function',
        'class_specifier': 'class',
        'struct_specifier': 'struct',
        'enum_specifier': 'enum',
        'union_specifier': 'union',
        'namespace_definition': 'namespace',
        'type_definition': 'type_alias',
        'alias_declaration': 'type_alias',
        'declaration': 'variable',
        'field_declaration': 'variable',
    },
    identifier_kinds=frozenset({'identifier', 'type_identifier', 'field_identifier', 'namespace_identifier'}),
    name_resolver=_cpp_name,
)

_PYTHON = LanguageSpec(
    language_id='python',
    grammar_module='tree_sitter_python',
    chunkable_kinds=frozenset({'function_definition', 'class_definition', 'decorated_definition'}),
    container_kinds=frozenset({'class_definition', 'decorated_definition'}),
    class_kinds=frozenset({'class_definition'}),
    wrapper_fields={'decorated_definition': 'definition'},
    symbol_kinds={'function_definition': 'function', 'class_definition': 'class'},
    comment_prefixes=HASH_COMMENTS,
    name_resolver=_python_name,
)

_JS_CHUNKABLE = frozenset({
    'function_declaration',
    'generator_function_declaration',
    'arrow_function',
    'class_declaration',
    'method_definition',
    'export_statement',
})
_JS_SYMBOLS: Mapping[str, SymbolKind] = {
    'function_declaration': 'function',
    'generator_function_declaration': 'function',
    'arrow_function': 'function',
    'class_declaration': 'class',
    'method_definition': 'method',
    'lexical_declaration': 'variable',
    'variable_declaration': 'variable',
}

_JAVASCRIPT = LanguageSpec(
    language_id='javascript',
    grammar_module='tree_sitter_javascript',
    chunkable_kinds=_JS_CHUNKABLE,
    declaration_kinds=frozenset({'lexical_declaration', 'variable_declaration'}),
    container_kinds=frozenset({'class_declaration', 'export_statement'}),
    class_kinds=frozenset({'class_declaration'}),
    wrapper_fields={'export_statement': 'declaration'},
    symbol_kinds=_JS_SYMBOLS,
    identifier_kinds=frozenset({'identifier', 'property_identifier', 'shorthand_property_identifier'}),
    name_resolver=_js_name,
)

_TS_CHUNKABLE = _JS_CHUNKABLE | {
    'abstract_class_declaration',
    'interface_declaration',
    'type_alias_declaration',
    'enum_declaration',
    'internal_module',
}
_TS_SYMBOLS: Mapping[str, SymbolKind] = {
    **_JS_SYMBOLS,
    'abstract_class_declaration': 'class',
    'interface_declaration': 'interface',
    'type_alias_declaration': 'type_alias',
    'enum_declaration': 'enum',
    'internal_module': 'namespace',
}

_TYPESCRIPT = dataclasses.replace(
    _JAVASCRIPT,
    language_id='typescript',
    grammar_module='tree_sitter_typescript',
    grammar_function='language_typescript',
    chunkable_kinds=_TS_CHUNKABLE,
    container_kinds=frozenset({
        'class_declaration',
        'abstract_class_declaration',
        'export_statement',
        'internal_module',
    }),
    class_kinds=frozenset({'class_declaration', 'abstract_class_declaration'}),
    symbol_kinds=_TS_SYMBOLS,
    identifier_kinds=frozenset({
        'identifier',
        'property_identifier',
        'shorthand_property_identifier',
        'type_identifier',
    }),
)

_TSX = dataclasses.replace(_TYPESCRIPT, language_id='tsx', grammar_function='language_tsx')

_JAVA = LanguageSpec(
    language_id='java',
    grammar_module='tree_sitter_java',
    chunkable_kinds=frozenset({
        'method_declaration',
        'constructor_declaration',
        'class_declaration',
        'interface_declaration',
        'enum_declaration',
        'record_declaration',
    }),
    declaration_kinds=frozenset({'field_declaration'}),
    container_kinds=frozenset({'class_declaration', 'interface_declaration', 'enum_declaration', 'record_declaration'}),
    class_kinds=frozenset({'class_declaration', 'interface_declaration', 'enum_declaration', 'record_declaration'}),
    symbol_kinds={
        'method_declaration': 'method',
        'constructor_declaration': 'method',
        'class_declaration': 'class',
        'interface_declaration': 'interface',
        'enum_declaration': 'enum',
        'record_declaration': 'class',
        'field_declaration': 'variable',
    },
    identifier_kinds=frozenset({'identifier', 'type_identifier'}),
    name_resolver=_field_declaration_name,
)

_GO = LanguageSpec(
    language_id='go',
    grammar_module='tree_sitter_go',
    chunkable_kinds=frozenset({'function_declaration', 'method_declaration', 'type_declaration'}),
    declaration_kinds=frozenset({'var_declaration', 'const_declaration'}),
    symbol_kinds={
        'function_declaration': 'function',
        'method_declaration': 'method',
        'type_declaration': 'type_alias',
        'var_declaration': 'variable',
        'const_declaration': 'constant',
    },
    identifier_kinds=frozenset({'identifier', 'type_identifier', 'field_identifier'}),
    name_resolver=_go_name,
)

_RUST = LanguageSpec(
    language_id='rust',
    grammar_module='tree_sitter_rust',
    chunkable_kinds=frozenset({
        'function_item',
        'impl_item',
        'struct_item',
        'enum_item',
        'union_item',
        'trait_item',
        'mod_item',
        'type_item',
        'macro_definition',
    }),
    declaration_kinds=frozenset({'const_item', 'static_item'}),
    container_kinds=frozenset({'impl_item', 'trait_item', 'mod_item'}),
    class_kinds=frozenset({'impl_item', 'trait_item'}),
    symbol_kinds={
        'function_item': 'function',
        'impl_item': 'struct',
        'struct_item': 'struct',
        'enum_item': 'enum',
        'union_item': 'union',
        'trait_item': 'trait',
        'mod_item': 'module',
        'type_item': 'type_alias',
        'macro_definition': 'function',
        'const_item': 'constant',
        'static_item': 'variable',
    },
    identifier_kinds=frozenset({'identifier', 'type_identifier', 'field_identifier'}),
    name_resolver=_rust_name,
)

_CSHARP = LanguageSpec(
    language_id='csharp',
    grammar_module='tree_sitter_c_sharp',
    chunkable_kinds=frozenset({
        'method_declaration',
        'constructor_declaration',
        'class_declaration',
        'interface_declaration',
        'struct_declaration',
        'enum_declaration',
        'record_declaration',
        'namespace_declaration',
    }),
    declaration_kinds=frozenset({'field_declaration'}),
    container_kinds=frozenset({
        'class_declaration',
        'interface_declaration',
        'struct_declaration',
        'record_declaration',
        'namespace_declaration',
    }),
    class_kinds=frozenset({'class_declaration', 'interface_declaration', 'struct_declaration', 'record_declaration'}),
    symbol_kinds={
        'method_declaration': 'method',
        'constructor_declaration': 'method',
        'class_declaration': 'class',
        'interface_declaration': 'interface',
        'struct_declaration': 'struct',
        'enum_declaration': 'enum',
        'record_declaration': 'class',
        'namespace_declaration': 'namespace',
        'field_declaration': 'variable',
    },
    name_resolver=_field_declaration_name,
)

_SCALA = LanguageSpec(
    language_id='scala',
    grammar_module='tree_sitter_scala',
    chunkable_kinds=frozenset({
        'function_definition',
        'function_declaration',
        'class_definition',
        'object_definition',
        'trait_definition',
        'enum_definition',
    }),
    declaration_kinds=frozenset({'val_definition', 'var_definition', 'type_definition'}),
    container_kinds=frozenset({'class_definition', 'object_definition', 'trait_definition', 'enum_definition'}),
    class_kinds=frozenset({'class_definition', 'object_definition', 'trait_definition', 'enum_definition'}),
    symbol_kinds={
        'function_definition': 'function',
        'function_declaration': 'function',
        'class_definition': 'class',
        'object_definition': 'class',
        'trait_definition': 'trait',
        'enum_definition': 'enum',
        'val_definition': 'constant',
        'var_definition': 'variable',
        'type_definition': 'type_alias',
    },
    identifier_kinds=frozenset({'identifier', 'type_identifier'}),
    name_resolver=_scala_name,
)

# Block-form packages (`package Foo { ... }`) open like classes; statement-form
# packages are one-line chunks that name the namespace
_PERL = LanguageSpec(
    language_id='perl',
    grammar_module='tree_sitter_perl',
    chunkable_kinds=frozenset({
        'subroutine_declaration_statement',
        'method_declaration_statement',
        'package_statement',
        'class_statement',
    }),
    container_kinds=frozenset({'package_statement', 'class_statement'}),
    class_kinds=frozenset({'class_statement'}),
    symbol_kinds={
        'subroutine_declaration_statement': 'function',
        'method_declaration_statement': 'method',
        'package_statement': 'namespace',
        'class_statement': 'class',
    },
    identifier_kinds=frozenset({'bareword', 'package', 'function'}),
    comment_prefixes=HASH_COMMENTS,
)

LANGUAGES: Mapping[str, LanguageSpec] = {
    spec.language_id: spec
    for spec in (_CPP, _PYTHON, _JAVASCRIPT, _TYPESCRIPT, _TSX, _JAVA, _GO, _RUST, _CSHARP, _SCALA, _PERL)
}

_ALIASES: Mapping[str, str] = {
    'c': 'cpp',
    'c++': 'cpp',
    'cc': 'cpp',
    'cxx': 'cpp',
    'h': 'cpp',
    'hpp': 'cpp',
    'py': 'python',
    'js': 'javascript',
    'jsx': 'javascript',
    'ts': 'typescript',
    'rs': 'rust',
    'cs': 'csharp',
    'c#': 'csharp',
    'golang': 'go',
    'pl': 'perl',
    'pm': 'perl',
    'sc': 'scala',
}

# Extensions without a grammar still get indexed through the window splitter
EXTENSION_MAP: Mapping[str, str] = {
    '.c': 'cpp',
    '.h': 'cpp',
    '.cc': 'cpp',
    '.cpp': 'cpp',
    '.cxx': 'cpp',
    '.hh': 'cpp',
    '.hpp': 'cpp',
    '.hxx': 'cpp',
    '.ipp': 'cpp',
    '.py': 'python',
    '.pyi': 'python',
    '.js': 'javascript',
    '.jsx': 'javascript',
    '.mjs': 'javascript',
    '.cjs': 'javascript',
    '.ts': 'typescript',
    '.mts': 'typescript',
    '.tsx': 'tsx',
    '.java': 'java',
    '.go': 'go',
    '.rs': 'rust',
    '.cs': 'csharp',
    '.scala': 'scala',
    '.sc': 'scala',
    '.pl': 'perl',
    '.pm': 'perl',
    '.t': 'perl',
    '.rb': 'ruby',
    '.sh': 'shell',
    '.md': 'markdown',
    '.txt': 'text',
    '.json': 'json',
    '.yaml': 'yaml',
    '.yml': 'yaml',
    '.toml': 'toml',
    '.cmake': 'cmake',
}


def resolve_language(language_id: str) -> str:
    """Normalize a language id or alias ('C++', 'ts', 'py') to its canonical id."""
    key = language_id.strip().lower()
    return _ALIASES.get(key, key)


def language_for_path(path: str) -> str | None:
    """Language id for a file path based on its extension, or None if unsupported."""
    pure = PurePosixPath(path.replace('\\', '/'))
    if pure.name == 'CMakeLists.txt':
        return 'cmake'
    return EXTENSION_MAP.get(pure.suffix.lower())


@functools.cache
def _load_language(language_id: str) -> Language | None:
    spec = LANGUAGES[language_id]
    try:
        module = importlib.import_module(spec.grammar_module)
        return Language(getattr(module, spec.grammar_function)())
    except (ImportError, AttributeError) as e:
        logger.warning(f'[CHUNK] Grammar {spec.grammar_module} unavailable, {language_id} uses window splitting: {e}')
        return None


_parsers = threading.local()


def get_parser(language_id: str) -> Parser | None:
    """Cached parser for a canonical language id, or None when no grammar is usable.

    Parsers are not thread-safe, so each worker thread (or process) builds its own.
    """
    if language_id not in LANGUAGES:
        return None
    cache: dict[str, Parser] = getattr(_parsers, 'by_language', None) or {}
    _parsers.by_language = cache
    parser = cache.get(language_id)
    if parser is None:
        language = _load_language(language_id)
        if language is None:
            return None
        parser = cache[language_id] = Parser(language)
    return parser


def unwrap(spec: LanguageSpec, node: Node) -> Node:
    """Resolve wrapper nodes (decorators, exports, templates) to the declared node."""
    current = node
    while current.type in spec.wrapper_fields:
        field = spec.wrapper_fields[current.type]
        if field is not None:
            inner = current.child_by_field_name(field)
        else:
            candidates = [
                c for c in current.named_children if c.type in spec.chunkable_kinds or c.type in spec.declaration_kinds
            ]
            inner = candidates[-1] if candidates else None
        if inner is None:
            return current
        current = inner
    return current


def node_name(spec: LanguageSpec, node: Node) -> Node | None:
    """Name node of a declaration, after unwrapping. None for anonymous nodes."""
    inner = unwrap(spec, node)
    resolver = spec.name_resolver or (lambda n: n.child_by_field_name('name'))
    name = resolver(inner)
    if name is None and inner.type in spec.declaration_kinds:
        name = _declarator_leaf(inner.child_by_field_name('declarator'))
    return name


def symbol_kind(spec: LanguageSpec, node: Node, *, in_class: bool) -> SymbolKind | None:
    """Symbol kind for a declaration node, or None if it is not a symbol-bearing kind."""
    inner = unwrap(spec, node)
    kind = spec.symbol_kinds.get(inner.type)
    if kind == 'function' and in_class:
        return 'method'
    return kind
