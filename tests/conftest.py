"""Shared fixtures for binsql tests."""
from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from binsql.backend.memory import MemoryBackend
from binsql.config.schema import EngineConfig
from binsql.core.session import QuerySession

FIXTURES_DIR = Path(__file__).parent / "fixtures"

FUNCTION_COUNT = 88
TEXT_BASE = 0x401000
FUNC_STRIDE = 0x100

MAIN = 0x401000
INIT_CONFIG = 0x401100
PARSE_ARGS = 0x401200
DISPATCH = 0x401300
PRINTF = 0x420000
USAGE_STR = 0x410000
CONFIG_STR = 0x410020
UNUSED_STR = 0x410040

MAIN_PSEUDOCODE = [
    "int main(int argc, char **argv)",
    "{",
    "    init_config();",
    "    if (argc < 2)",
    "        printf(\"Usage: %s <file>\", argv[0]);",
    "    return parse_args(argc, argv);",
    "}",
]


def _function(index: int) -> dict[str, Any]:
    ea = TEXT_BASE + index * FUNC_STRIDE
    names = {MAIN: "main", INIT_CONFIG: "init_config", PARSE_ARGS: "parse_args", DISPATCH: "dispatch"}
    return {
        "address": hex(ea),
        "name": names.get(ea, f"sub_{ea:X}"),
        "size": 0x80,
        "blocks": [[hex(ea), hex(ea + 0x40)], [hex(ea + 0x40), hex(ea + 0x80)]],
        "instructions": [
            {"address": hex(ea), "mnemonic": "push", "size": 1, "disasm": "push rbp"},
            {"address": hex(ea + 1), "mnemonic": "mov", "size": 3, "disasm": "mov rbp, rsp"},
            {"address": hex(ea + 4), "mnemonic": "ret", "size": 1, "disasm": "ret"},
        ],
    }


def make_snapshot() -> dict[str, Any]:
    """An 88-function program with a small call graph and three strings."""
    functions = [_function(i) for i in range(FUNCTION_COUNT)]
    functions[0].update({
        "pseudocode": MAIN_PSEUDOCODE,
        "variables": [
            {"name": "argc", "type": "int", "size": 4, "is_argument": True, "storage": "register"},
            {"name": "argv", "type": "char **", "size": 8, "is_argument": True, "storage": "register"},
            {"name": "result", "type": "int", "size": 4, "storage": "stack", "stack_offset": -12},
        ],
        "calls": [
            {"address": hex(MAIN + 0x10), "callee": hex(INIT_CONFIG)},
            {"address": hex(MAIN + 0x20), "callee": hex(PARSE_ARGS), "args": ["argc", "argv"]},
            {"address": hex(MAIN + 0x28), "callee": hex(PRINTF), "args": ["\"Usage: %s <file>\"", "argv[0]"]},
        ],
        "ast": [
            {"id": 0, "parent": None, "op": "block"},
            {"id": 1, "parent": 0, "op": "call", "address": hex(MAIN + 0x10), "text": "init_config()"},
            {"id": 2, "parent": 0, "op": "if", "text": "argc < 2"},
            {"id": 3, "parent": 2, "op": "call", "address": hex(MAIN + 0x28), "text": "printf(...)"},
        ],
    })
    return {
        "info": {"file": "sample.exe", "arch": "x86_64", "bits": 64},
        "segments": [
            {"name": ".text", "start": hex(TEXT_BASE), "end": hex(TEXT_BASE + FUNCTION_COUNT * FUNC_STRIDE),
             "perm": 5, "class": "CODE"},
            {"name": ".rdata", "start": hex(USAGE_STR), "end": hex(USAGE_STR + 0x60), "perm": 4, "class": "DATA",
             "bytes": (b"Usage: %s <file>".ljust(0x20, b"\0") + b"config.ini".ljust(0x20, b"\0")).hex()},
            {"name": ".idata", "start": hex(PRINTF), "end": hex(PRINTF + 0x10), "perm": 4, "class": "XTRN"},
        ],
        "functions": functions,
        "names": {hex(USAGE_STR): "aUsage", hex(PRINTF): "printf"},
        "comments": [{"address": hex(MAIN), "text": "program entry"}],
        "entries": [{"ordinal": 0, "address": hex(MAIN), "name": "start"}],
        "imports": [{"address": hex(PRINTF), "name": "printf", "module": "msvcrt"}],
        "strings": [
            {"address": hex(USAGE_STR), "content": "Usage: %s <file>"},
            {"address": hex(CONFIG_STR), "content": "config.ini"},
            {"address": hex(UNUSED_STR), "content": "unused", "encoding": "utf-16le", "length": 6},
        ],
        "xrefs": [
            {"from": hex(MAIN + 0x10), "to": hex(INIT_CONFIG), "type": "call"},
            {"from": hex(MAIN + 0x20), "to": hex(PARSE_ARGS), "type": "call"},
            {"from": hex(MAIN + 0x28), "to": hex(PRINTF), "type": "call"},
            {"from": hex(MAIN + 0x30), "to": hex(USAGE_STR), "type": "data_read"},
            {"from": hex(INIT_CONFIG + 0x08), "to": hex(PARSE_ARGS), "type": "call"},
            {"from": hex(INIT_CONFIG + 0x40), "to": hex(CONFIG_STR), "type": "data_read"},
            {"from": hex(DISPATCH + 0x04), "to": hex(INIT_CONFIG), "type": "call"},
            {"from": hex(DISPATCH + 0x0C), "to": hex(DISPATCH + 0x40), "type": "jump"},
            {"from": hex(DISPATCH + 0x50), "to": hex(USAGE_STR), "type": "data_read"},
            # Outside every function: from_func is 0.
            {"from": "0x500000", "to": hex(MAIN), "type": "call"},
            {"from": "0x500010", "to": hex(CONFIG_STR), "type": "data_read"},
        ],
    }


def make_image_snapshot() -> dict[str, Any]:
    """A single 32-byte segment at 0 holding ``CC 01 90`` at offset 0x10."""
    data = bytes(16) + bytes([0xCC, 0x01, 0x90]) + bytes([0x90, 0x90, 0xCC, 0x02, 0x90]) + bytes(8)
    return {
        "segments": [{"name": "blob", "start": "0x0", "end": hex(len(data)), "perm": 4, "bytes": data.hex()}],
    }


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture
def sample_config_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "sample_config.yaml"


@pytest.fixture
def snapshot() -> dict[str, Any]:
    return make_snapshot()


@pytest.fixture
def backend(snapshot: dict[str, Any]) -> MemoryBackend:
    return MemoryBackend(snapshot)


@pytest.fixture
def snapshot_file(tmp_path: Path, snapshot: dict[str, Any]) -> Path:
    path = tmp_path / "sample.json"
    path.write_text(json.dumps(snapshot), encoding="utf-8")
    return path


@pytest.fixture
def make_session() -> Iterator[Callable[..., QuerySession]]:
    """Factory for open sessions; accepts EngineConfig overrides as keywords."""
    opened: list[QuerySession] = []

    def factory(backend: MemoryBackend, **engine: Any) -> QuerySession:
        session = QuerySession(backend, EngineConfig(**engine), name="sample.exe").open()
        opened.append(session)
        return session

    yield factory
    for session in opened:
        session.close()


@pytest.fixture
def session(backend: MemoryBackend, make_session: Callable[..., QuerySession]) -> QuerySession:
    return make_session(backend)


@pytest.fixture
def image_backend() -> MemoryBackend:
    return MemoryBackend(make_image_snapshot())
