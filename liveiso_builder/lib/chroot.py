from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, Mapping, Sequence

from .command import CmdResult, run_cmd

logger = logging.getLogger(__name__)

# Every chrooted command sees these; a stage cannot unset them.
NONINTERACTIVE_ENV: Dict[str, str] = {
    "DEBIAN_FRONTEND": "noninteractive",
    "DEBCONF_NONINTERACTIVE_SEEN": "true",
    "DEBCONF_PRIORITY": "critical",
}


class ChrootExecutor:
    """Run commands inside a root tree with a fixed non-interactive environment."""

    def __init__(self, runner: Callable[..., CmdResult] = run_cmd) -> None:
        self._runner = runner

    @staticmethod
    def environment(overrides: Mapping[str, str] | None = None) -> Dict[str, str]:
        env = dict(overrides or {})
        env.update(NONINTERACTIVE_ENV)
        return env

    def run(
        self,
        root: Path | str,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        input_text: str | None = None,
        check: bool = True,
    ) -> CmdResult:
        return self._runner(
            ["chroot", str(root), *argv],
            check=check,
            env=self.environment(env),
            input_text=input_text,
        )

    def shell(self, root: Path | str, script: str, *, check: bool = True) -> CmdResult:
        return self.run(root, ["/bin/bash", "-c", script], check=check)
