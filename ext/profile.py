"""whitespace-lang extension: instruction profile.

Counts executed instructions per mnemonic and writes a histogram to stderr
when the program ends or faults.
"""

from __future__ import annotations

import sys
from collections import Counter
from typing import Any

from extensions import ExtensionAPI, StepContext


WS_LANG_EXTENSION_NAME = "profile"
WS_LANG_EXTENSION_API_VERSION = 1


def render_profile(counts: Counter) -> str:
    total = sum(counts.values())
    lines = [f"profile: {total} instructions"]
    for mnemonic, count in counts.most_common():
        lines.append(f"  {mnemonic:<8} {count}")
    return "\n".join(lines)


def ws_lang_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=WS_LANG_EXTENSION_NAME, version="1.0.0")
    counts: Counter = Counter()

    @ext.on_event("program_start")
    def _reset(interpreter: Any, program: Any) -> None:
        counts.clear()
        interpreter.profile_counts = counts

    @ext.every_n_steps(1)
    def _count(interpreter: Any, ctx: StepContext) -> None:
        counts[ctx.rule] += 1

    @ext.on_event("program_end")
    def _report(interpreter: Any, state: Any) -> None:
        print(render_profile(counts), file=sys.stderr)

    @ext.on_event("on_error")
    def _report_fault(interpreter: Any, error: Any) -> None:
        print(render_profile(counts), file=sys.stderr)
