"""bfstream extension: execution counts per ledger slot.

Counts every executed instruction (live and replayed) by ledger index and by
instruction character, and prints the busiest slots to stderr when the
program ends. Set ``BFSTREAM_HOTSPOTS_TOP`` to change how many are listed.
"""

from __future__ import annotations

import os
import sys
from collections import Counter
from typing import Any, List, Tuple

from extensions import ExtensionAPI


BFSTREAM_EXTENSION_NAME = "hotspots"
BFSTREAM_EXTENSION_API_VERSION = 1


class HotspotCounter:
    __slots__ = ("by_index", "by_instruction", "replayed")

    def __init__(self) -> None:
        self.by_index: Counter = Counter()
        self.by_instruction: Counter = Counter()
        self.replayed = 0

    def observe(self, interpreter: Any, instruction: Any, replay: bool) -> None:
        self.by_index[interpreter.ledger.cursor] += 1
        self.by_instruction[instruction.value] += 1
        if replay:
            self.replayed += 1

    def top(self, n: int) -> List[Tuple[int, int]]:
        return self.by_index.most_common(n)

    def report(self, interpreter: Any, n: int) -> str:
        total = sum(self.by_instruction.values())
        lines = [f"hotspots: {total} instructions executed, {self.replayed} replayed"]
        for index, count in self.top(n):
            location = interpreter.ledger.location_at(index)
            where = f" ({location})" if location else ""
            lines.append(f"  #{index} '{interpreter.ledger.at(index)}' x{count}{where}")
        mix = ", ".join(f"'{ch}'={count}" for ch, count in sorted(self.by_instruction.items()))
        lines.append(f"  mix: {mix}")
        return "\n".join(lines)


def bfstream_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="hotspots", version="0.1.0")
    counter = HotspotCounter()

    ext.on_event("before_instruction", counter.observe)

    @ext.on_event("program_end")
    def _report(interpreter: Any) -> None:
        top = int(os.environ.get("BFSTREAM_HOTSPOTS_TOP", "5"))
        print(counter.report(interpreter, top), file=sys.stderr)
