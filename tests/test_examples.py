"""Tests that verify the examples in the examples/ directory run successfully."""

from __future__ import annotations

from pathlib import Path

import pytest


class TestSelfContainedExamples:
    """Examples that host and call a service within one process."""

    def test_hello_world(self, runtime_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        """hello_world.py: unary calls over the service's Unix socket."""
        from examples.hello_world import main

        main()
        out = capsys.readouterr().out
        assert "Hello, World!" in out
        assert "6.0" in out
        assert not (runtime_dir / "demonite" / "Greeter").exists()
