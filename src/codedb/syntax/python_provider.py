# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Python syntax provider.

Turns Python source text into the tagged SyntaxNode tree consumed by the
collector and the definition resolver. Parsing pipeline:

1. AST parsing with error recovery: a line reported by ``SyntaxError`` is
   neutralized (replaced by ``pass`` or a block opener of the same
   indentation) and parsing is retried, so malformed input still yields a
   best-effort partial tree. Line numbering is preserved.
2. Tree building: the ``ast`` module tree is reduced to scopes, declarations,
   imports and name usages, with byte offsets converted to character offsets.
3. Depth limits: subtrees nested deeper than ``max_depth`` are skipped.

Parsing can run in a worker thread with a timeout (``parse_in_executor``).
"""

import ast
import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from codedb.models import Range
from codedb.syntax.nodes import NodeKind, SyntaxNode

logger = logging.getLogger(__name__)

_DEF_KEYWORD = re.compile(r"(?:async\s+)?def\s+|class\s+")
_BLOCK_OPENER = re.compile(r":\s*(#.*)?$")

FunctionNode = Union[ast.FunctionDef, ast.AsyncFunctionDef]


class ParseTimeoutError(Exception):
    """Raised when parsing a single file exceeds the timeout limit."""

    pass


@dataclass
class ParseFault:
    """A tolerated syntax error. ``line`` is zero-based."""

    line: int
    message: str


@dataclass
class ParseResult:
    """Output of one parse."""

    tree: SyntaxNode
    errors: List[ParseFault] = field(default_factory=list)
    duration: float = 0.0

    @property
    def is_partial(self) -> bool:
        return bool(self.errors)


class PythonSyntaxProvider:
    """Tolerant Python parser producing SyntaxNode trees."""

    MAX_RECOVERY_ATTEMPTS = 20
    MAX_DEPTH = 200
    PARSE_TIMEOUT_SECONDS = 5.0

    def __init__(
        self,
        max_recovery_attempts: int = MAX_RECOVERY_ATTEMPTS,
        max_depth: int = MAX_DEPTH,
        timeout_seconds: float = PARSE_TIMEOUT_SECONDS,
    ):
        """Initialize the provider.

        Args:
            max_recovery_attempts: Lines that may be neutralized before giving up.
            max_depth: Maximum nesting depth converted into the tree.
            timeout_seconds: Timeout used by parse_in_executor().
        """
        self.max_recovery_attempts = max_recovery_attempts
        self.max_depth = max_depth
        self.timeout_seconds = timeout_seconds

    def parse(
        self, uri: str, text: str, module_name: str, is_package: bool = False
    ) -> ParseResult:
        """Parse source text into a syntax tree.

        Never raises for malformed input; faults are reported in the result.

        Args:
            uri: File identifier (used in diagnostics only).
            text: Source text.
            module_name: Dotted module name the file defines.
            is_package: True for a package ``__init__`` module.

        Returns:
            ParseResult with the (possibly partial) tree.
        """
        started = time.perf_counter()
        lines = text.split("\n")
        module_ast, errors = self._parse_tolerant(uri, lines)

        builder = _TreeBuilder(lines, module_name, is_package, self.max_depth, uri)
        tree = builder.build(module_ast)

        duration = time.perf_counter() - started
        if errors:
            logger.debug(f"Parsed {uri} with {len(errors)} recovered syntax error(s)")
        return ParseResult(tree=tree, errors=errors, duration=duration)

    async def parse_in_executor(
        self, uri: str, text: str, module_name: str, is_package: bool = False
    ) -> ParseResult:
        """Run parse() in the default thread executor with a timeout.

        Raises:
            ParseTimeoutError: If parsing exceeds ``timeout_seconds``.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self.parse, uri, text, module_name, is_package)
        try:
            return await asyncio.wait_for(future, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ParseTimeoutError(f"Parsing {uri} exceeded {self.timeout_seconds}s") from e

    def _parse_tolerant(self, uri: str, lines: List[str]) -> Tuple[ast.Module, List[ParseFault]]:
        """Parse, neutralizing offending lines until the source parses.

        Returns:
            Tuple of (module AST, faults). The module is empty if recovery failed.
        """
        errors: List[ParseFault] = []
        working = list(lines)
        neutralized = set()

        for _ in range(self.max_recovery_attempts + 1):
            try:
                return ast.parse("\n".join(working), filename=uri, mode="exec"), errors
            except SyntaxError as e:
                line_index = self._recovery_line(working, e.lineno, neutralized)
                if line_index is None:
                    errors.append(ParseFault(max((e.lineno or 1) - 1, 0), e.msg or "syntax error"))
                    break
                errors.append(ParseFault(line_index, e.msg or "syntax error"))
                working[line_index] = self._neutralize(working[line_index])
                neutralized.add(line_index)
            except (RecursionError, MemoryError, ValueError) as e:
                # ValueError: source contains null bytes
                errors.append(ParseFault(0, f"unparseable source: {type(e).__name__}"))
                break

        logger.warning(f"Could not recover a syntax tree for {uri}, indexing it as empty")
        return ast.Module(body=[], type_ignores=[]), errors

    @staticmethod
    def _recovery_line(lines: List[str], lineno: Optional[int], done: set) -> Optional[int]:
        """Pick the line to neutralize for an error reported at ``lineno``.

        Errors reported on blank or already-neutralized lines (e.g. unexpected
        EOF) are attributed to the closest preceding candidate line.
        """
        if lineno is None or not lines:
            return None
        index = min(max(lineno - 1, 0), len(lines) - 1)
        while index >= 0:
            if index not in done and lines[index].strip():
                return index
            index -= 1
        return None

    @staticmethod
    def _neutralize(line: str) -> str:
        indent = line[: len(line) - len(line.lstrip())]
        if _BLOCK_OPENER.search(line.rstrip()):
            return f"{indent}if True:"
        return f"{indent}pass"


class _TreeBuilder:
    """Reduces a Python ``ast`` module to a SyntaxNode tree."""

    _COMPREHENSIONS = (ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp)

    def __init__(
        self, lines: List[str], module_name: str, is_package: bool, max_depth: int, uri: str
    ):
        self.lines = lines
        self.module_name = module_name
        self.is_package = is_package
        self.max_depth = max_depth
        self.uri = uri
        self._depth_warned = False

    def build(self, module: ast.Module) -> SyntaxNode:
        last_line = max(len(self.lines) - 1, 0)
        last_char = len(self.lines[-1]) if self.lines else 0
        root = SyntaxNode(
            kind=NodeKind.MODULE,
            range=Range.from_coordinates(0, 0, last_line, last_char),
            name=self.module_name,
            module=self.module_name,
            is_package=self.is_package,
            documentation=self._docstring(module),
        )
        for stmt in module.body:
            self._visit(stmt, root, 1)
        return root

    # -- positions --------------------------------------------------------

    def _char(self, lineno: int, col: int) -> int:
        """Convert a 1-based line and UTF-8 byte column to a character column."""
        if not 1 <= lineno <= len(self.lines):
            return col
        line = self.lines[lineno - 1]
        if line.isascii():
            return col
        return len(line.encode("utf-8")[:col].decode("utf-8", errors="ignore"))

    def _range(self, node: ast.AST) -> Range:
        lineno = getattr(node, "lineno", 1)
        end_lineno = getattr(node, "end_lineno", None) or lineno
        col = getattr(node, "col_offset", 0)
        end_col = getattr(node, "end_col_offset", None)
        if end_col is None:
            end_col = col
        return Range.from_coordinates(
            lineno - 1,
            self._char(lineno, col),
            end_lineno - 1,
            self._char(end_lineno, end_col),
        )

    def _word_range(self, line: int, character: int, word: str) -> Range:
        """Range of ``word`` starting at a zero-based position."""
        return Range.from_coordinates(line, character, line, character + len(word))

    def _declaration_name_range(self, node: Union[FunctionNode, ast.ClassDef]) -> Range:
        full = self._range(node)
        line_index = node.lineno - 1
        line = self.lines[line_index] if line_index < len(self.lines) else ""
        start = full.start.character
        match = _DEF_KEYWORD.match(line, start)
        if match is not None:
            return self._word_range(line_index, match.end(), node.name)
        found = line.find(node.name, start)
        if found >= 0:
            return self._word_range(line_index, found, node.name)
        return full

    def _attribute_name_range(self, node: ast.Attribute) -> Range:
        full = self._range(node)
        start = max(full.end.character - len(node.attr), 0)
        return Range.from_coordinates(full.end.line, start, full.end.line, full.end.character)

    # -- helpers ----------------------------------------------------------

    @staticmethod
    def _docstring(node: ast.AST) -> Optional[str]:
        try:
            return ast.get_docstring(node, clean=True)  # type: ignore[arg-type]
        except TypeError:
            return None

    def _source_line(self, lineno: int) -> Optional[str]:
        if 1 <= lineno <= len(self.lines):
            text = self.lines[lineno - 1].strip()
            return text[:200] if text else None
        return None

    @staticmethod
    def _function_signature(node: FunctionNode) -> str:
        prefix = "async def" if isinstance(node, ast.AsyncFunctionDef) else "def"
        try:
            args = ast.unparse(node.args)
            returns = f" -> {ast.unparse(node.returns)}" if node.returns is not None else ""
        except Exception:
            args = ", ".join(a.arg for a in node.args.posonlyargs + node.args.args)
            returns = ""
        return f"{prefix} {node.name}({args}){returns}"

    @staticmethod
    def _class_signature(node: ast.ClassDef) -> str:
        try:
            parts = [ast.unparse(b) for b in node.bases]
            parts.extend(ast.unparse(k) for k in node.keywords)
        except Exception:
            parts = []
        if parts:
            return f"class {node.name}({', '.join(parts)})"
        return f"class {node.name}"

    def _too_deep(self, depth: int) -> bool:
        if depth <= self.max_depth:
            return False
        if not self._depth_warned:
            logger.warning(
                f"Syntax tree depth limit ({self.max_depth}) exceeded in {self.uri}, "
                "skipping subtree"
            )
            self._depth_warned = True
        return True

    # -- visitors ---------------------------------------------------------

    def _visit(self, node: ast.AST, parent: SyntaxNode, depth: int, header: bool = False) -> None:
        if self._too_deep(depth):
            return

        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            self._visit_function(node, parent, depth, header)
        elif isinstance(node, ast.ClassDef):
            self._visit_class(node, parent, depth, header)
        elif isinstance(node, ast.Lambda):
            scope = self._anonymous_scope(node, parent, header)
            self._visit_arguments(node.args, scope, depth)
            self._visit(node.body, scope, depth + 1)
        elif isinstance(node, self._COMPREHENSIONS):
            scope = self._anonymous_scope(node, parent, header)
            for child in ast.iter_child_nodes(node):
                self._visit(child, scope, depth + 1)
        elif isinstance(node, ast.Import):
            for alias in node.names:
                self._add_import(alias, node, parent, module=alias.name, imported_name=None)
        elif isinstance(node, ast.ImportFrom):
            for alias in node.names:
                if alias.name == "*":
                    continue
                self._add_import(
                    alias,
                    node,
                    parent,
                    module=node.module,
                    imported_name=alias.name,
                    level=node.level,
                )
        elif isinstance(node, (ast.Assign, ast.AnnAssign)):
            self._visit_assignment(node, parent, depth)
        elif isinstance(node, ast.Name):
            if isinstance(node.ctx, ast.Del):
                return
            name_range = self._range(node)
            parent.add_child(
                SyntaxNode(
                    kind=NodeKind.NAME,
                    range=name_range,
                    name=node.id,
                    name_range=name_range,
                    header=header,
                    is_store=isinstance(node.ctx, ast.Store),
                )
            )
        elif isinstance(node, ast.Attribute):
            self._visit_attribute(node, parent, depth, header)
        elif isinstance(node, ast.ExceptHandler) and node.name:
            line = node.lineno - 1
            found = self.lines[line].find(node.name) if line < len(self.lines) else -1
            name_range = (
                self._word_range(line, found, node.name) if found >= 0 else self._range(node)
            )
            parent.add_child(
                SyntaxNode(
                    kind=NodeKind.NAME,
                    range=name_range,
                    name=node.name,
                    name_range=name_range,
                    is_store=True,
                )
            )
            for child in ast.iter_child_nodes(node):
                self._visit(child, parent, depth + 1, header)
        else:
            for child in ast.iter_child_nodes(node):
                self._visit(child, parent, depth + 1, header)

    def _visit_class(self, node: ast.ClassDef, parent: SyntaxNode, depth: int, header: bool) -> None:
        cls = parent.add_child(
            SyntaxNode(
                kind=NodeKind.CLASS,
                range=self._range(node),
                name=node.name,
                name_range=self._declaration_name_range(node),
                header=header,
                signature=self._class_signature(node),
                documentation=self._docstring(node),
            )
        )
        for expr in node.decorator_list + node.bases:
            self._visit(expr, cls, depth + 1, header=True)
        for keyword in node.keywords:
            self._visit(keyword.value, cls, depth + 1, header=True)
        for stmt in node.body:
            self._visit(stmt, cls, depth + 1)

    def _visit_function(self, node: FunctionNode, parent: SyntaxNode, depth: int, header: bool) -> None:
        func = parent.add_child(
            SyntaxNode(
                kind=NodeKind.FUNCTION,
                range=self._range(node),
                name=node.name,
                name_range=self._declaration_name_range(node),
                header=header,
                signature=self._function_signature(node),
                documentation=self._docstring(node),
            )
        )
        for expr in node.decorator_list:
            self._visit(expr, func, depth + 1, header=True)
        if node.returns is not None:
            self._visit(node.returns, func, depth + 1, header=True)
        self._visit_arguments(node.args, func, depth)
        for stmt in node.body:
            self._visit(stmt, func, depth + 1)

    def _visit_arguments(self, args: ast.arguments, scope: SyntaxNode, depth: int) -> None:
        for default in list(args.defaults) + [d for d in args.kw_defaults if d is not None]:
            self._visit(default, scope, depth + 1, header=True)

        all_args = list(args.posonlyargs) + list(args.args)
        if args.vararg is not None:
            all_args.append(args.vararg)
        all_args.extend(args.kwonlyargs)
        if args.kwarg is not None:
            all_args.append(args.kwarg)

        for arg in all_args:
            if arg.annotation is not None:
                self._visit(arg.annotation, scope, depth + 1, header=True)
            arg_range = self._range(arg)
            scope.add_child(
                SyntaxNode(
                    kind=NodeKind.PARAMETER,
                    range=arg_range,
                    name=arg.arg,
                    name_range=self._word_range(
                        arg_range.start.line, arg_range.start.character, arg.arg
                    ),
                )
            )

    def _anonymous_scope(self, node: ast.AST, parent: SyntaxNode, header: bool) -> SyntaxNode:
        """Scope node for lambdas and comprehensions; declares nothing."""
        return parent.add_child(
            SyntaxNode(kind=NodeKind.FUNCTION, range=self._range(node), header=header)
        )

    def _add_import(
        self,
        alias: ast.alias,
        stmt: ast.AST,
        parent: SyntaxNode,
        module: Optional[str],
        imported_name: Optional[str],
        level: int = 0,
    ) -> None:
        alias_range = self._range(alias) if hasattr(alias, "lineno") else self._range(stmt)
        parent.add_child(
            SyntaxNode(
                kind=NodeKind.IMPORT,
                range=alias_range,
                name=alias.asname,
                name_range=alias_range,
                module=module,
                imported_name=imported_name,
                level=level,
            )
        )

    def _visit_assignment(
        self, node: Union[ast.Assign, ast.AnnAssign], parent: SyntaxNode, depth: int
    ) -> None:
        if isinstance(node, ast.Assign):
            targets = list(node.targets)
        else:
            targets = [node.target]
            self._visit(node.annotation, parent, depth + 1)

        # Value first: it is evaluated before the targets are bound
        if node.value is not None:
            self._visit(node.value, parent, depth + 1)

        declares = parent.kind in (NodeKind.MODULE, NodeKind.CLASS)
        for target in targets:
            for element in self._flatten_targets(target):
                if declares and isinstance(element, ast.Name):
                    name_range = self._range(element)
                    parent.add_child(
                        SyntaxNode(
                            kind=NodeKind.VARIABLE,
                            range=self._range(node),
                            name=element.id,
                            name_range=name_range,
                            is_store=True,
                            signature=self._source_line(node.lineno),
                        )
                    )
                else:
                    self._visit(element, parent, depth + 1)

    def _flatten_targets(self, target: ast.AST) -> List[ast.AST]:
        if isinstance(target, (ast.Tuple, ast.List)):
            flat: List[ast.AST] = []
            for element in target.elts:
                flat.extend(self._flatten_targets(element))
            return flat
        if isinstance(target, ast.Starred):
            return self._flatten_targets(target.value)
        return [target]

    def _visit_attribute(
        self, node: ast.Attribute, parent: SyntaxNode, depth: int, header: bool
    ) -> None:
        attribute = parent.add_child(
            SyntaxNode(
                kind=NodeKind.ATTRIBUTE,
                range=self._range(node),
                name=node.attr,
                name_range=self._attribute_name_range(node),
                header=header,
                is_store=isinstance(node.ctx, ast.Store),
            )
        )
        self._visit(node.value, attribute, depth + 1)
        if isinstance(node.value, (ast.Name, ast.Attribute)) and attribute.children:
            attribute.base = attribute.children[0]
