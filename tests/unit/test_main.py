"""Harness entry point and configuration tests."""

import pytest

import main
from config import Config


class TestConfig:
    """Test environment overrides."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("DHT_TESTER_BASE_PORT", raising=False)
        monkeypatch.delenv("DHT_TESTER_RPC_PORT", raising=False)
        cfg = Config()
        assert cfg.network.base_port == 6000
        assert cfg.rpc.endpoint == "http://127.0.0.1:9000"

    def test_env_overrides(self, monkeypatch, key_dir):
        monkeypatch.setenv("DHT_TESTER_BASE_PORT", "16000")
        monkeypatch.setenv("DHT_TESTER_RPC_PORT", "19000")
        monkeypatch.setenv("DHT_TESTER_KEY_DIR", key_dir)

        cfg = Config()

        assert cfg.network.base_port == 16000
        assert cfg.rpc.port == 19000
        assert cfg.harness.key_dir == key_dir

    def test_bad_env_value_ignored(self, monkeypatch):
        monkeypatch.setenv("DHT_TESTER_BASE_PORT", "many")
        assert Config().network.base_port == 6000


class TestArgs:
    """Test command line handling."""

    def test_defaults_match_config(self):
        cfg = Config()
        args = main.build_parser(cfg).parse_args([])

        assert args.count == 10
        assert args.duration == 600.0
        assert args.num_test_cids == 20
        assert not args.auto
        assert args.log == "info"

    def test_apply_args(self, key_dir):
        cfg = Config()
        args = main.build_parser(cfg).parse_args([
            "--count", "4", "--duration", "5", "--prefix-length", "12",
            "--base-port", "7000", "--rpc-port", "7999", "--key-dir", key_dir,
        ])

        main.apply_args(cfg, args)

        assert cfg.harness.count == 4
        assert cfg.harness.duration == 5.0
        assert cfg.harness.prefix_length == 12
        assert cfg.network.base_port == 7000
        assert cfg.rpc.port == 7999
        assert cfg.harness.key_dir == key_dir

    @pytest.mark.asyncio
    @pytest.mark.parametrize("argv", [
        ["--prefix-length", "257"],
        ["--prefix-length", "-1"],
        ["--count", "0"],
        ["--num-test-cids", "-2"],
        ["--log", "chatty"],
    ])
    async def test_invalid_values_exit(self, argv):
        with pytest.raises(SystemExit) as exc_info:
            await main.main(argv)
        assert exc_info.value.code == 2
