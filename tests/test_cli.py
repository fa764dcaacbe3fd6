"""Tests for the terminal confirmation used by ``localagent run``."""

import threading
from unittest.mock import patch

import pytest

from localagent.__main__ import _approve_all, _ask_confirmation


# ═══════════════════════════════════════════════════════════════
# Destructive-action Confirmation
# ═══════════════════════════════════════════════════════════════

class TestConfirmation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply, expected", [
        ("y", True),
        ("YES ", True),
        ("n", False),
        ("", False),
    ])
    async def test_reply(self, reply, expected):
        with patch("builtins.input", return_value=reply):
            assert await _ask_confirmation("workspace_write_file", {"path": "a.txt"}) is expected

    @pytest.mark.asyncio
    async def test_eof_declines(self):
        with patch("builtins.input", side_effect=EOFError):
            assert await _ask_confirmation("workspace_delete_file", {}) is False

    @pytest.mark.asyncio
    async def test_prompt_runs_off_the_event_loop(self):
        seen = []

        def fake_input(prompt):
            seen.append((threading.current_thread() is threading.main_thread(), prompt))
            return "y"

        with patch("builtins.input", side_effect=fake_input):
            assert await _ask_confirmation("workspace_write_file", {"path": "a.txt"}) is True

        on_main, prompt = seen[0]
        assert on_main is False
        assert "workspace_write_file" in prompt

    def test_yes_flag_approves_everything(self):
        assert _approve_all("workspace_delete_file", {"path": "x"}) is True
