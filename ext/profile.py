"""RegAsm extension: per-line execution profile.

Counts how many times each source line executes and prints the busiest
lines to stderr when the program ends or faults.
"""

from __future__ import annotations

import sys
from typing import Any, Dict, List, Optional, TextIO

import numpy as np

from extensions import ExtensionAPI

REGASM_EXTENSION_NAME = "profile"
REGASM_EXTENSION_API_VERSION = 1

TOP_LINES = 10


class LineProfile:
    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream
        self.lines: List[int] = []

    def reset(self, *_: Any) -> None:
        self.lines = []

    def observe(self, _interpreter: Any, instruction: Any) -> None:
        self.lines.append(instruction.line)

    def counts(self) -> Dict[int, int]:
        if not self.lines:
            return {}
        hits = np.bincount(np.asarray(self.lines, dtype=np.int64))
        executed = np.flatnonzero(hits)
        return {int(line): int(hits[line]) for line in executed}

    def report(self, *_: Any) -> None:
        stream = self.stream or sys.stderr
        counts = self.counts()
        total = sum(counts.values())
        print(f"profile: {total} instructions executed", file=stream)
        busiest = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:TOP_LINES]
        for line, hits in busiest:
            print(f"  line {line:>5}: {hits}", file=stream)


def regasm_register(ext: ExtensionAPI) -> None:
    profile = LineProfile()
    ext.metadata(name=REGASM_EXTENSION_NAME, version="1.0.0")
    ext.on_event("program_start", profile.reset)
    ext.on_event("before_instruction", profile.observe)
    ext.on_event("program_end", profile.report)
    ext.on_event("on_error", profile.report)
