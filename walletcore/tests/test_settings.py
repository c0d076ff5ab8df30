"""
Tests for the unified settings module.
"""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from walletcore.models import BackendType, NetworkType
from walletcore.settings import (
    WalletSyncSettings,
    ensure_config_file,
    generate_config_template,
    get_config_path,
    get_settings,
    reset_settings,
)


@pytest.fixture(autouse=True)
def reset_settings_fixture() -> Generator[None, None, None]:
    """Reset settings before and after each test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def temp_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Create a temporary data directory and set it as WALLETSYNC_DATA_DIR."""
    data_dir = tmp_path / ".walletsync"
    data_dir.mkdir(parents=True)
    monkeypatch.setenv("WALLETSYNC_DATA_DIR", str(data_dir))
    monkeypatch.delenv("WALLETSYNC_CONFIG_FILE", raising=False)
    return data_dir


class TestConfigTemplate:
    """Tests for config template generation."""

    def test_generate_config_template(self) -> None:
        template = generate_config_template()

        assert "# walletsync configuration" in template
        assert "# Priority (highest to lowest):" in template

        assert "[backend]" in template
        assert "[wallet]" in template
        assert "[logging]" in template

        # Everything is commented out
        assert "# stop_gap = 20" in template
        assert "# concurrency = 4" in template
        assert '# network = "mainnet"' in template
        assert "# url = " in template
        assert '# type = "esplora"' in template

    def test_ensure_config_file_creates_template(self, temp_data_dir: Path) -> None:
        config_path = temp_data_dir / "config.toml"
        assert not config_path.exists()

        result = ensure_config_file(temp_data_dir)

        assert result == config_path
        assert "# walletsync configuration" in config_path.read_text()

    def test_ensure_config_file_does_not_overwrite(self, temp_data_dir: Path) -> None:
        config_path = temp_data_dir / "config.toml"
        config_path.write_text("# Custom config\n[backend]\nstop_gap = 5\n")

        ensure_config_file(temp_data_dir)

        assert config_path.read_text().startswith("# Custom config")

    def test_template_is_valid_empty_config(self, temp_data_dir: Path) -> None:
        """A freshly generated template loads as pure defaults."""
        ensure_config_file(temp_data_dir)

        settings = WalletSyncSettings()

        assert settings.backend.stop_gap == 20
        assert settings.wallet.network == NetworkType.MAINNET


class TestSettingsDefaults:
    def test_default_backend_settings(self, temp_data_dir: Path) -> None:
        settings = WalletSyncSettings()

        assert settings.backend.type == BackendType.ESPLORA
        assert settings.backend.url is None
        assert settings.backend.proxy is None
        assert settings.backend.retry == 2
        assert settings.backend.timeout is None
        assert settings.backend.concurrency == 4
        assert settings.backend.stop_gap == 20

    def test_default_wallet_settings(self, temp_data_dir: Path) -> None:
        settings = WalletSyncSettings()

        assert settings.wallet.network == NetworkType.MAINNET
        assert settings.wallet.database == "wallet.json"
        assert settings.logging.level == "INFO"

    @pytest.mark.parametrize(
        ("network", "url"),
        [
            (NetworkType.MAINNET, "https://blockstream.info/api"),
            (NetworkType.TESTNET, "https://blockstream.info/testnet/api"),
            (NetworkType.SIGNET, "https://mempool.space/signet/api"),
            (NetworkType.REGTEST, "http://127.0.0.1:3002"),
        ],
    )
    def test_backend_url_follows_network(
        self, temp_data_dir: Path, network: NetworkType, url: str
    ) -> None:
        settings = WalletSyncSettings(wallet={"network": network})
        assert settings.get_backend_url() == url

    @pytest.mark.parametrize(
        ("network", "url"),
        [
            (NetworkType.MAINNET, "ssl://electrum.blockstream.info:50002"),
            (NetworkType.TESTNET, "ssl://electrum.blockstream.info:60002"),
            (NetworkType.REGTEST, "tcp://127.0.0.1:50001"),
        ],
    )
    def test_electrum_url_follows_network(
        self, temp_data_dir: Path, network: NetworkType, url: str
    ) -> None:
        settings = WalletSyncSettings(backend={"type": "electrum"}, wallet={"network": network})
        assert settings.get_backend_url() == url


class TestSettingsFromEnv:
    def test_env_override_backend_settings(
        self, temp_data_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("BACKEND__URL", "http://esplora:3000/")
        monkeypatch.setenv("BACKEND__STOP_GAP", "50")
        monkeypatch.setenv("BACKEND__PROXY", "socks5://tor:9050")

        settings = WalletSyncSettings()

        assert settings.backend.url == "http://esplora:3000"
        assert settings.backend.stop_gap == 50
        assert settings.backend.proxy == "socks5://tor:9050"
        assert settings.get_backend_url() == "http://esplora:3000"

    def test_env_override_wallet_network(
        self, temp_data_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("WALLET__NETWORK", "signet")

        settings = WalletSyncSettings()

        assert settings.wallet.network == NetworkType.SIGNET

    def test_invalid_stop_gap_rejected(
        self, temp_data_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("BACKEND__STOP_GAP", "0")

        with pytest.raises(ValueError):
            WalletSyncSettings()

    def test_env_backend_type(self, temp_data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BACKEND__TYPE", "electrum")

        settings = WalletSyncSettings()

        assert settings.backend.type == BackendType.ELECTRUM
        assert settings.get_backend_url() == "ssl://electrum.blockstream.info:50002"

    def test_invalid_backend_type_rejected(
        self, temp_data_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("BACKEND__TYPE", "bitcoind")

        with pytest.raises(ValueError):
            WalletSyncSettings()


class TestSettingsFromToml:
    def test_toml_values_loaded(self, temp_data_dir: Path) -> None:
        (temp_data_dir / "config.toml").write_text(
            '[backend]\nurl = "http://localhost:3002"\nstop_gap = 30\n\n'
            '[wallet]\nnetwork = "regtest"\n'
        )

        settings = WalletSyncSettings()

        assert settings.backend.url == "http://localhost:3002"
        assert settings.backend.stop_gap == 30
        assert settings.wallet.network == NetworkType.REGTEST

    def test_env_beats_toml(self, temp_data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        (temp_data_dir / "config.toml").write_text("[backend]\nstop_gap = 30\n")
        monkeypatch.setenv("BACKEND__STOP_GAP", "7")

        settings = WalletSyncSettings()

        assert settings.backend.stop_gap == 7

    def test_init_beats_env(self, temp_data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOGGING__LEVEL", "DEBUG")

        settings = get_settings(logging={"level": "ERROR"})

        assert settings.logging.level == "ERROR"

    def test_invalid_toml_exits(self, temp_data_dir: Path) -> None:
        (temp_data_dir / "config.toml").write_text("[backend\nstop_gap = ")

        with pytest.raises(SystemExit):
            WalletSyncSettings()

    def test_explicit_config_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = tmp_path / "custom.toml"
        config.write_text("[backend]\nconcurrency = 8\n")
        monkeypatch.setenv("WALLETSYNC_CONFIG_FILE", str(config))

        assert get_config_path() == config
        assert WalletSyncSettings().backend.concurrency == 8


class TestGetSettings:
    def test_cached_until_reset(self, temp_data_dir: Path) -> None:
        first = get_settings()
        assert get_settings() is first

        reset_settings()
        assert get_settings() is not first

    def test_data_dir_defaults_to_env(self, temp_data_dir: Path) -> None:
        assert get_settings().get_data_dir() == temp_data_dir
