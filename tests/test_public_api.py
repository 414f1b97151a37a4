"""Tests for the top-level package exports."""

from __future__ import annotations

import guildvoice


class TestPublicAPI:
    def test_all_names_resolve(self) -> None:
        for name in guildvoice.__all__:
            assert hasattr(guildvoice, name), name

    def test_version(self) -> None:
        assert guildvoice.__version__ == "0.1.0"

    def test_http_router_is_separate(self) -> None:
        assert "create_capability_router" not in guildvoice.__all__
