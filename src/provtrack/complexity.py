"""Code complexity metrics for the analyze_complexity tool.

Cyclomatic complexity per function and class comes from radon. Branch,
condition and cognitive counts come from a single AST walk.
"""

import ast
from dataclasses import asdict, dataclass, field

from radon.visitors import ComplexityVisitor

_BRANCHES = (ast.If, ast.IfExp, ast.ExceptHandler) + ((ast.Match,) if hasattr(ast, "Match") else ())
_LOOPS = (ast.For, ast.AsyncFor, ast.While)


@dataclass
class FunctionComplexity:
    name: str
    complexity: int
    line: int


@dataclass
class ClassComplexity:
    name: str
    methods: int
    complexity: int


@dataclass
class ComplexityResult:
    cyclomatic: int = 0
    cognitive: int = 0
    branches: int = 0
    conditions: int = 0
    functions: int = 0
    classes: int = 0
    lines: int = 0
    parsed: bool = True
    function_details: list[FunctionComplexity] = field(default_factory=list)
    class_details: list[ClassComplexity] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class _FlowCounter(ast.NodeVisitor):
    """Counts branches and conditions, and scores cognitive complexity.

    Each branch or loop costs one plus its nesting depth. Each boolean
    operator sequence costs one.
    """

    def __init__(self):
        self.branches = 0
        self.conditions = 0
        self.cognitive = 0
        self._nesting = 0

    def generic_visit(self, node: ast.AST) -> None:
        if isinstance(node, _BRANCHES + _LOOPS):
            if isinstance(node, _BRANCHES):
                self.branches += 1
            else:
                self.conditions += 1
            self.cognitive += 1 + self._nesting
            self._nesting += 1
            super().generic_visit(node)
            self._nesting -= 1
            return

        if isinstance(node, ast.BoolOp):
            self.conditions += len(node.values) - 1
            self.cognitive += 1
        super().generic_visit(node)


def analyze(content: str) -> ComplexityResult:
    """Measure Python source. Unparseable input gets only a line count."""
    lines = content.count("\n") + 1
    try:
        tree = ast.parse(content)
    except (SyntaxError, ValueError):
        return ComplexityResult(lines=lines, parsed=False)

    visitor = ComplexityVisitor.from_ast(tree)
    functions = list(visitor.functions)
    for cls in visitor.classes:
        functions.extend(cls.methods)

    counter = _FlowCounter()
    counter.visit(tree)

    return ComplexityResult(
        cyclomatic=visitor.total_complexity,
        cognitive=counter.cognitive,
        branches=counter.branches,
        conditions=counter.conditions,
        functions=len(functions),
        classes=len(visitor.classes),
        lines=lines,
        function_details=[
            FunctionComplexity(name=f.fullname, complexity=f.complexity, line=f.lineno)
            for f in functions
        ],
        class_details=[
            ClassComplexity(name=c.name, methods=len(c.methods), complexity=c.real_complexity)
            for c in visitor.classes
        ],
    )
