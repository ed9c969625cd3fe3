"""Per-host outcomes and the final report."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

# Exit code recorded when a host never produced one of its own
FAILURE_EXIT_CODE = 255

GREEN = "\033[32m"
RED = "\033[31m"
RESET = "\033[0m"


@dataclass(frozen=True)
class Outcome:
    """The recorded result for one host."""

    host: str
    exit_code: int
    signal: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.signal is None

    @property
    def reason(self) -> str:
        if self.error:
            return self.error
        if self.signal:
            return f"signal {self.signal}"
        return f"exit {self.exit_code}"

    @classmethod
    def failure(cls, host: str, error: str, signal: str | None = None) -> Outcome:
        return cls(host=host, exit_code=FAILURE_EXIT_CODE, signal=signal, error=error)


@dataclass(frozen=True)
class Summary:
    """Success and failure sets derived from the outcome mapping."""

    succeeded: list[Outcome]
    failed: list[Outcome]

    @classmethod
    def from_outcomes(cls, outcomes: Mapping[str, Outcome]) -> Summary:
        ordered = [outcomes[host] for host in sorted(outcomes)]
        return cls(
            succeeded=[o for o in ordered if o.succeeded],
            failed=[o for o in ordered if not o.succeeded],
        )

    @property
    def exit_status(self) -> int:
        return 1 if self.failed else 0

    def render(self, color: bool = False) -> str:
        """Render the two-section report, one line per host."""
        ok, ng, reset = (GREEN, RED, RESET) if color else ("", "", "")
        lines = [f"{ok}SUCCESS{reset} {o.host}" for o in self.succeeded]
        lines += [f"{ng}FAIL{reset} {o.host} ({o.reason})" for o in self.failed]
        return "\n".join(lines)
