"""Unit tests for CLI rendering helpers."""

from __future__ import annotations

import io

import pytest

from conductor.ui.render import CLIRenderer, create_renderer


@pytest.fixture(autouse=True)
def _plain_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FORCE_COLOR", raising=False)
    monkeypatch.delenv("NO_COLOR", raising=False)


def _renderer(**kwargs: bool) -> tuple[CLIRenderer, io.StringIO]:
    buffer = io.StringIO()
    return create_renderer(file=buffer, **kwargs), buffer


def test_plain_output_has_no_escape_sequences() -> None:
    renderer, buffer = _renderer()

    renderer.heading("Summary")
    renderer.kv("Tier", "SIMPLE")
    renderer.warning("slow hook")
    renderer.ok("tests")
    renderer.fail("lint")
    renderer.items(["a", "b"])

    out = buffer.getvalue()
    assert "\x1b[" not in out
    assert out.splitlines() == [
        "Summary",
        "Tier: SIMPLE",
        "  Warning: slow hook",
        "  OK    tests",
        "  FAIL  lint",
        "  - a",
        "  - b",
    ]


def test_markup_in_values_is_printed_literally() -> None:
    renderer, buffer = _renderer()

    renderer.text("[red]not markup[/red]")
    renderer.table(("name", "note"), [("x", "[bold]raw[/bold]")])

    out = buffer.getvalue()
    assert "[red]not markup[/red]" in out
    assert "[bold]raw[/bold]" in out


def test_table_pads_short_rows_and_skips_empty_input() -> None:
    renderer, buffer = _renderer()

    renderer.table(("a", "b"), [])
    assert buffer.getvalue() == ""

    renderer.table(("check", "command"), [("tests",)], title="Checks")
    out = buffer.getvalue()
    assert "Checks" in out
    assert "tests" in out


def test_next_steps_section() -> None:
    renderer, buffer = _renderer()

    renderer.next_steps([])
    assert buffer.getvalue() == ""

    renderer.next_steps(["conductor init"])
    assert buffer.getvalue().splitlines() == ["", "Next steps:", "  $ conductor init"]


def test_no_color_flag_and_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NO_COLOR", raising=False)
    assert not CLIRenderer(file=io.StringIO()).console.no_color
    assert CLIRenderer(no_color=True, file=io.StringIO()).console.no_color

    monkeypatch.setenv("NO_COLOR", "1")
    renderer = CLIRenderer(verbose=True, file=io.StringIO())
    assert renderer.console.no_color
    assert renderer.verbose
