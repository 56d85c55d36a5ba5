"""Tests for settings validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from donation_guard.core.config import DetectorSettings, Settings


def test_default_off_hours_window() -> None:
    cfg = DetectorSettings()

    assert (cfg.off_hours_start, cfg.off_hours_end) == (2, 6)


@pytest.mark.parametrize("start, end", [(22, 4), (5, 5)])
def test_off_hours_window_must_not_be_empty_or_wrap(start: int, end: int) -> None:
    with pytest.raises(ValidationError, match="OFF_HOURS_START"):
        DetectorSettings(off_hours_start=start, off_hours_end=end)


def test_off_hours_window_from_environment_is_validated(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DETECTOR_OFF_HOURS_START", "22")
    monkeypatch.setenv("DETECTOR_OFF_HOURS_END", "4")

    with pytest.raises(ValidationError):
        Settings()
