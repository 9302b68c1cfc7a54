from binsql.core.models import (
    AstNode,
    BasicBlock,
    Comment,
    Decompilation,
    DecompiledLine,
    Entry,
    Function,
    HlilCall,
    HlilVar,
    Import,
    Instruction,
    Name,
    QueryResult,
    Segment,
    StringLiteral,
    XRef,
)

__all__ = [
    "Function", "Segment", "XRef", "StringLiteral", "Import", "Entry", "Name",
    "BasicBlock", "Instruction", "Comment", "DecompiledLine", "HlilVar",
    "HlilCall", "AstNode", "Decompilation", "QueryResult",
]
