from __future__ import annotations

import os
import pathlib
import subprocess


def top() -> pathlib.Path:
    if "EKSTACK_TOP" in os.environ:
        return pathlib.Path(os.environ["EKSTACK_TOP"])

    return pathlib.Path(
        subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],  # noqa: S607
            text=True,
            capture_output=True,
            check=False,
        ).stdout.strip()
    )


class Paths:
    @property
    def root(self) -> pathlib.Path:
        """Return the stack configuration directory.

        Raises:
            RuntimeError: If EKSTACK_ROOT is not set in the environment

        """
        if "EKSTACK_ROOT" not in os.environ:
            msg = "EKSTACK_ROOT environment variable not set."
            raise RuntimeError(msg)

        return pathlib.Path(os.environ["EKSTACK_ROOT"])

    @property
    def cache(self) -> pathlib.Path:
        if "EKSTACK_CACHE" in os.environ:
            return pathlib.Path(os.environ["EKSTACK_CACHE"])

        return top() / ".local"

    @property
    def stacks(self) -> pathlib.Path:
        return self.root / "__stacks__"
