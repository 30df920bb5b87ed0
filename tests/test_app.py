"""
Test the operator CLI end to end.
"""

import json
import logging

import pytest

from app import main, parse_kdf_costs
from conftest import PASSWORD, TEST_ADDRESS_0, TEST_MNEMONIC
from services.logging import parse_level
from wallet.errors import ConfigError

CHEAP_KDF = ["--kdf-cost", "time_cost=1", "--kdf-cost", "memory_cost=1024", "--kdf-cost", "parallelism=1"]


@pytest.fixture
def password_file(tmp_path):
    path = tmp_path / "password.txt"
    path.write_text(PASSWORD + "\n")
    return str(path)


def run(*argv) -> int:
    return main(["--log-level", "warning", *argv])


def test_direct_create_and_list(tmp_path, password_file, capsys):
    wallet_dir = str(tmp_path / "wallet")
    assert run("wallet", "create", "--wallet-dir", wallet_dir, "--password-file", password_file,
               "--num-accounts", "2", *CHEAP_KDF) == 0
    created = [line.split()[0] for line in capsys.readouterr().out.splitlines() if line.startswith("0x")]
    assert len(created) == 2

    assert run("accounts", "list", "--wallet-dir", wallet_dir) == 0
    listed = [line.split()[0] for line in capsys.readouterr().out.splitlines()]
    assert listed == created


def test_accounts_create(tmp_path, password_file, capsys):
    wallet_dir = str(tmp_path / "wallet")
    run("wallet", "create", "--wallet-dir", wallet_dir, "--password-file", password_file, *CHEAP_KDF)
    assert run("accounts", "create", "--wallet-dir", wallet_dir, "--password-file", password_file,
               "--num-accounts", "3") == 0
    capsys.readouterr()
    run("accounts", "list", "--wallet-dir", wallet_dir)
    assert len(capsys.readouterr().out.splitlines()) == 3


def test_empty_wallet_lists_nothing(tmp_path, password_file, capsys):
    wallet_dir = str(tmp_path / "wallet")
    run("wallet", "create", "--wallet-dir", wallet_dir, "--password-file", password_file, *CHEAP_KDF)
    capsys.readouterr()
    assert run("accounts", "list", "--wallet-dir", wallet_dir) == 0
    assert capsys.readouterr().out.strip() == "No accounts"


def test_derived_create_writes_mnemonic_file(tmp_path, password_file, capsys):
    wallet_dir = str(tmp_path / "wallet")
    mnemonic_file = tmp_path / "mnemonic.txt"
    assert run("wallet", "create", "--wallet-dir", wallet_dir, "--keymanager-kind", "derived",
               "--password-file", password_file, "--mnemonic-file", str(mnemonic_file),
               "--entropy-bits", "128", "--num-accounts", "1", *CHEAP_KDF) == 0
    mnemonic = mnemonic_file.read_text().strip()
    assert len(mnemonic.split()) == 12
    assert mnemonic not in capsys.readouterr().out


def test_recover(tmp_path, password_file, capsys):
    mnemonic_file = tmp_path / "mnemonic.txt"
    mnemonic_file.write_text(TEST_MNEMONIC + "\n")
    assert run("wallet", "recover", "--wallet-dir", str(tmp_path / "recovered"),
               "--mnemonic-file", str(mnemonic_file), "--password-file", password_file,
               "--num-accounts", "2", *CHEAP_KDF) == 0
    out = capsys.readouterr().out
    assert TEST_ADDRESS_0 in out
    assert len([line for line in out.splitlines() if line.startswith("0x")]) == 2


def test_recover_invalid_mnemonic(tmp_path, password_file, capsys):
    mnemonic_file = tmp_path / "mnemonic.txt"
    mnemonic_file.write_text("abandon " * 11 + "zebra\n")
    assert run("wallet", "recover", "--wallet-dir", str(tmp_path / "recovered"),
               "--mnemonic-file", str(mnemonic_file), "--password-file", password_file,
               "--num-accounts", "1", *CHEAP_KDF) == 1
    err = capsys.readouterr().err
    assert err.startswith("Error:")
    assert "zebra" not in err


def test_wrong_password_exits_nonzero(tmp_path, password_file, capsys):
    wallet_dir = str(tmp_path / "wallet")
    run("wallet", "create", "--wallet-dir", wallet_dir, "--password-file", password_file, *CHEAP_KDF)
    wrong = tmp_path / "wrong.txt"
    wrong.write_text("not it\n")
    assert run("accounts", "create", "--wallet-dir", wallet_dir, "--password-file", str(wrong)) == 1
    assert "Wrong password" in capsys.readouterr().err


def test_edit_config_label(tmp_path, password_file):
    wallet_dir = tmp_path / "wallet"
    run("wallet", "create", "--wallet-dir", str(wallet_dir), "--password-file", password_file, *CHEAP_KDF)
    assert run("wallet", "edit-config", "--wallet-dir", str(wallet_dir), "--password-file", password_file,
               "--label", "hot") == 0
    assert json.loads((wallet_dir / "wallet.json").read_text())["label"] == "hot"


def test_edit_config_remote_flags_on_direct(tmp_path, password_file, capsys):
    wallet_dir = str(tmp_path / "wallet")
    run("wallet", "create", "--wallet-dir", wallet_dir, "--password-file", password_file, *CHEAP_KDF)
    assert run("wallet", "edit-config", "--wallet-dir", wallet_dir, "--password-file", password_file,
               "--remote-address", "127.0.0.1:9000") == 1
    assert "Remote settings" in capsys.readouterr().err


def test_create_direct_with_remote_flags(tmp_path, password_file, capsys):
    wallet_dir = tmp_path / "wallet"
    assert run("wallet", "create", "--wallet-dir", str(wallet_dir), "--password-file", password_file,
               "--remote-address", "127.0.0.1:9000", "--remote-cert", "c.pem",
               "--remote-key", "c.key", "--remote-ca-cert", "ca.pem", *CHEAP_KDF) == 1
    assert "Remote settings" in capsys.readouterr().err
    assert not (wallet_dir / "wallet.json").exists()


def test_remote_create_and_list(tmp_path, signer, capsys):
    identity = signer.identity()
    wallet_dir = str(tmp_path / "remote")
    assert run("wallet", "create", "--wallet-dir", wallet_dir, "--keymanager-kind", "remote",
               "--remote-address", identity.address, "--remote-cert", identity.cert_path,
               "--remote-key", identity.key_path, "--remote-ca-cert", identity.ca_cert_path) == 0
    capsys.readouterr()
    assert run("accounts", "list", "--wallet-dir", wallet_dir) == 0
    listed = [line.split()[0] for line in capsys.readouterr().out.splitlines()]
    assert listed == ["0x" + pk.hex() for pk in signer.accounts]


def test_remote_create_needs_all_flags(tmp_path, capsys):
    assert run("wallet", "create", "--wallet-dir", str(tmp_path / "remote"), "--keymanager-kind", "remote",
               "--remote-address", "127.0.0.1:9000") == 1
    assert "--remote-cert" in capsys.readouterr().err


def test_open_missing_wallet(tmp_path, capsys):
    assert run("accounts", "list", "--wallet-dir", str(tmp_path / "nothing")) == 1
    assert capsys.readouterr().err.startswith("Error:")


def test_parse_kdf_costs():
    assert parse_kdf_costs(["time_cost=2", "memory_cost = 2048"]) == {"time_cost": 2, "memory_cost": 2048}
    assert parse_kdf_costs(None) == {}
    with pytest.raises(ConfigError):
        parse_kdf_costs(["time_cost"])
    with pytest.raises(ConfigError):
        parse_kdf_costs(["time_cost=fast"])


def test_unknown_log_level(capsys):
    assert main(["--log-level", "loud", "accounts", "list", "--wallet-dir", "unused"]) == 1
    assert "Unknown log level" in capsys.readouterr().err


def test_parse_level():
    assert parse_level("debug") == logging.DEBUG
    assert parse_level("WARNING") == logging.WARNING
    with pytest.raises(ValueError):
        parse_level("loud")
