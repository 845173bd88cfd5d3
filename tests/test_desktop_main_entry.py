from __future__ import annotations

import runpy
from pathlib import Path

import hudlink_app.__main__ as entry

ENTRY_FILE = Path(__file__).resolve().parents[1] / "apps" / "desktop" / "hudlink_app" / "__main__.py"


def _record(monkeypatch, rc: int = 0) -> list[list[str]]:
    seen: list[list[str]] = []

    def fake_cli(argv):
        seen.append(list(argv))
        return rc

    monkeypatch.setattr(entry, "_cli_main", fake_cli)
    return seen


def test_bare_launch_starts_the_agent(monkeypatch) -> None:
    seen = _record(monkeypatch)
    assert entry.main([]) == 0
    assert seen == [["run"]]
    assert entry.DEFAULT_COMMAND == ["run"]


def test_bare_launch_reads_process_argv(monkeypatch) -> None:
    seen = _record(monkeypatch)
    monkeypatch.setattr(entry.sys, "argv", ["hudlink"])
    entry.main()
    monkeypatch.setattr(entry.sys, "argv", ["hudlink", "list-devices"])
    entry.main()
    assert seen == [["run"], ["list-devices"]]


def test_subcommand_forwarded_unchanged(monkeypatch) -> None:
    seen = _record(monkeypatch)
    entry.main(["send-frame", "--dry-run"])
    assert seen == [["send-frame", "--dry-run"]]


def test_cli_exit_code_propagates(monkeypatch) -> None:
    _record(monkeypatch, rc=2)
    assert entry.main(["replay", "missing.jsonl"]) == 2


def test_entry_file_loads_outside_package() -> None:
    namespace = runpy.run_path(str(ENTRY_FILE))
    assert callable(namespace["main"])
    assert namespace["DEFAULT_COMMAND"] == ["run"]
