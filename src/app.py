"""
Validator Wallet - Operator CLI

Creates, recovers and edits validator wallets, manages accounts, and runs
the reference remote signer.

Entry point for the application.
"""

import argparse
import getpass
import logging
import sys
from pathlib import Path
from typing import Optional

from models.config import KeymanagerKind, RemoteIdentity, WalletConfig
from services.logging import configure_logging, parse_level
from services.server import RemoteSignerServer, build_server_context
from services.signing import SigningService
from utils import read_secret_file, set_secure_permissions
from wallet.crypto import KDF_ALGORITHMS, KDF_ARGON2ID
from wallet.derivation import SUPPORTED_ENTROPY_BITS, generate_mnemonic
from wallet.errors import ConfigError, UnsupportedForKind, WalletError
from wallet.keys import address_of, public_key_hex
from wallet.manager import Wallet

logger = logging.getLogger(__name__)

DEFAULT_SIGNER_PORT = 9500


# ============================================
# Input helpers
# ============================================

def read_password(password_file: Optional[str], confirm: bool = False) -> str:
    """Password from a file (trailing newlines trimmed) or an interactive prompt."""
    if password_file:
        return read_secret_file(password_file)
    password = getpass.getpass("Wallet password: ")
    if confirm and getpass.getpass("Confirm password: ") != password:
        raise ConfigError("Passwords do not match", operation="password")
    if not password:
        raise ConfigError("Password must not be empty", operation="password")
    return password


def parse_kdf_costs(pairs: list[str]) -> dict:
    """['time_cost=1', 'memory_cost=1024'] -> {'time_cost': 1, 'memory_cost': 1024}"""
    costs = {}
    for pair in pairs or []:
        name, sep, value = pair.partition("=")
        if not sep:
            raise ConfigError(f"KDF cost must be NAME=VALUE, got '{pair}'", operation="create")
        try:
            costs[name.strip()] = int(value)
        except ValueError:
            raise ConfigError(f"KDF cost '{name}' must be an integer", operation="create") from None
    return costs


def has_remote_flags(args) -> bool:
    return any(getattr(args, name) is not None for name in
               ("remote_address", "remote_cert", "remote_key", "remote_ca_cert", "remote_timeout"))


def remote_identity_from_args(args, base: Optional[RemoteIdentity] = None) -> Optional[RemoteIdentity]:
    """Build (or update) a remote identity from --remote-* flags."""
    fields = {
        "address": args.remote_address,
        "cert_path": args.remote_cert,
        "key_path": args.remote_key,
        "ca_cert_path": args.remote_ca_cert,
        "timeout": args.remote_timeout,
    }
    if not has_remote_flags(args):
        return None
    if base is not None:
        return base.replace(**fields)
    missing = [name for name in ("address", "cert_path", "key_path", "ca_cert_path") if not fields[name]]
    if missing:
        raise ConfigError(f"Remote wallets need --remote-address, --remote-cert, --remote-key "
                          f"and --remote-ca-cert (missing: {', '.join(missing)})", operation="create")
    if fields["timeout"] is None:
        del fields["timeout"]
    return RemoteIdentity(**fields)


def write_mnemonic_file(path: str, mnemonic: str) -> None:
    target = Path(path)
    with open(target, "w", encoding="utf-8") as f:
        f.write(mnemonic + "\n")
    set_secure_permissions(target)


def print_accounts(public_keys) -> int:
    count = 0
    for public_key in public_keys:
        print(f"{public_key_hex(public_key)}  {address_of(public_key)}")
        count += 1
    return count


# ============================================
# Commands
# ============================================

def cmd_wallet_create(args) -> int:
    kind = KeymanagerKind.parse(args.keymanager_kind)
    if kind is not KeymanagerKind.REMOTE and has_remote_flags(args):
        raise UnsupportedForKind(f"Remote settings do not apply to a {kind.value} wallet",
                                 operation="create", wallet_path=args.wallet_dir)
    config = WalletConfig(
        storage_dir=args.wallet_dir,
        kind=kind,
        kdf_algorithm=args.kdf,
        kdf_costs=parse_kdf_costs(args.kdf_cost),
        remote=remote_identity_from_args(args),
        label=args.label or ""
    )
    password = read_password(args.password_file, confirm=True) if kind.uses_password else None

    mnemonic = None
    if kind is KeymanagerKind.DERIVED:
        mnemonic = generate_mnemonic(args.entropy_bits)
        if args.mnemonic_file:
            write_mnemonic_file(args.mnemonic_file, mnemonic)
            print(f"Mnemonic written to {args.mnemonic_file}. Store it offline.")
        else:
            print("Write down this mnemonic and store it offline; it is the only backup:")
            print(mnemonic)

    with Wallet.create(config, password, mnemonic) as wallet:
        print(f"Created {kind.value} wallet at {wallet.storage_dir}")
        if args.num_accounts and kind.uses_password:
            wallet.unlock(password)
            if kind is KeymanagerKind.DERIVED:
                created = wallet.keymanager.create_accounts(args.num_accounts)
            else:
                created = [wallet.create_account() for _ in range(args.num_accounts)]
            print_accounts(created)
    return 0


def cmd_wallet_edit_config(args) -> int:
    with Wallet.open(WalletConfig(storage_dir=args.wallet_dir)) as wallet:
        password = read_password(args.password_file) if wallet.kind.uses_password else None
        wallet.unlock(password)
        if wallet.kind is not KeymanagerKind.REMOTE:
            if has_remote_flags(args):
                raise UnsupportedForKind(f"Remote settings do not apply to a {wallet.kind.value} wallet",
                                         operation="edit-config", wallet_path=wallet.storage_dir)
            remote = None
        else:
            remote = remote_identity_from_args(args, base=wallet.remote)
        wallet.edit_config(remote=remote, label=args.label)
        print(f"Updated configuration of {wallet.storage_dir}")
    return 0


def cmd_wallet_recover(args) -> int:
    mnemonic = read_secret_file(args.mnemonic_file)
    passphrase = read_secret_file(args.mnemonic_passphrase_file) if args.mnemonic_passphrase_file else ""
    password = read_password(args.password_file, confirm=True)
    config = WalletConfig(
        storage_dir=args.wallet_dir,
        kind=KeymanagerKind.DERIVED,
        kdf_algorithm=args.kdf,
        kdf_costs=parse_kdf_costs(args.kdf_cost)
    )
    with Wallet.recover(config, mnemonic, args.num_accounts, password, passphrase) as wallet:
        print(f"Recovered derived wallet at {wallet.storage_dir}")
        print_accounts(wallet.list_accounts())
    return 0


def cmd_accounts_list(args) -> int:
    with Wallet.open(WalletConfig(storage_dir=args.wallet_dir)) as wallet:
        count = print_accounts(wallet.list_accounts())
        if count == 0:
            print("No accounts")
    return 0


def cmd_accounts_create(args) -> int:
    with Wallet.open(WalletConfig(storage_dir=args.wallet_dir)) as wallet:
        password = read_password(args.password_file) if wallet.kind.uses_password else None
        wallet.unlock(password)
        created = [wallet.create_account() for _ in range(args.num_accounts)]
        print_accounts(created)
    return 0


def cmd_remote_signer_serve(args) -> int:
    context = build_server_context(args.cert, args.key, args.ca_cert)
    with Wallet.open(WalletConfig(storage_dir=args.wallet_dir)) as wallet:
        password = read_password(args.password_file) if wallet.kind.uses_password else None
        wallet.unlock(password)
        server = RemoteSignerServer(SigningService(wallet), context, host=args.host)
        try:
            server.serve_forever(args.port)
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
    return 0


# ============================================
# Parser
# ============================================

def _add_remote_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--remote-address", help="Remote signer host:port")
    parser.add_argument("--remote-cert", help="Client certificate (PEM)")
    parser.add_argument("--remote-key", help="Client private key (PEM)")
    parser.add_argument("--remote-ca-cert", help="CA certificate for the remote signer (PEM)")
    parser.add_argument("--remote-timeout", type=float, help="Request timeout in seconds (default 5)")


def _add_kdf_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--kdf", choices=KDF_ALGORITHMS, default=KDF_ARGON2ID,
                        help="Password KDF (default: argon2id)")
    parser.add_argument("--kdf-cost", action="append", metavar="NAME=VALUE",
                        help="Override a KDF cost, e.g. time_cost=4 or n=32768")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="validator-wallet", description="Validator wallet and keymanager")
    p.add_argument("--log-level", default="info", help="debug, info, warning, error")
    p.add_argument("--log-file", help="Also write logs to this file")
    sub = p.add_subparsers(dest="command", required=True)

    # wallet ...
    p_wallet = sub.add_parser("wallet", help="Create, edit or recover a wallet")
    wallet_sub = p_wallet.add_subparsers(dest="wallet_command", required=True)

    p_create = wallet_sub.add_parser("create", help="Create a new wallet")
    p_create.add_argument("--wallet-dir", required=True, help="Wallet storage root")
    p_create.add_argument("--keymanager-kind", choices=[k.value for k in KeymanagerKind],
                          default=KeymanagerKind.DIRECT.value)
    p_create.add_argument("--password-file", help="Read the password from a file (newline trimmed)")
    p_create.add_argument("--mnemonic-file", help="Derived: write the new mnemonic to this file")
    p_create.add_argument("--entropy-bits", type=int, choices=SUPPORTED_ENTROPY_BITS, default=256,
                          help="Derived: mnemonic entropy (default 256 = 24 words)")
    p_create.add_argument("--num-accounts", type=int, default=0, help="Accounts to create right away")
    p_create.add_argument("--label", help="Free-form wallet label")
    _add_kdf_flags(p_create)
    _add_remote_flags(p_create)
    p_create.set_defaults(func=cmd_wallet_create)

    p_edit = wallet_sub.add_parser("edit-config", help="Edit remote settings or the label")
    p_edit.add_argument("--wallet-dir", required=True)
    p_edit.add_argument("--password-file", help="Read the password from a file (newline trimmed)")
    p_edit.add_argument("--label", help="New wallet label")
    _add_remote_flags(p_edit)
    p_edit.set_defaults(func=cmd_wallet_edit_config)

    p_recover = wallet_sub.add_parser("recover", help="Recover a derived wallet from its mnemonic")
    p_recover.add_argument("--wallet-dir", required=True, help="New wallet storage root")
    p_recover.add_argument("--mnemonic-file", required=True)
    p_recover.add_argument("--mnemonic-passphrase-file", help="Optional BIP-39 passphrase file")
    p_recover.add_argument("--password-file", required=True, help="Password for the recovered wallet")
    p_recover.add_argument("--num-accounts", type=int, required=True)
    _add_kdf_flags(p_recover)
    p_recover.set_defaults(func=cmd_wallet_recover)

    # accounts ...
    p_accounts = sub.add_parser("accounts", help="List or create accounts")
    accounts_sub = p_accounts.add_subparsers(dest="accounts_command", required=True)

    p_list = accounts_sub.add_parser("list", help="List account public keys")
    p_list.add_argument("--wallet-dir", required=True)
    p_list.set_defaults(func=cmd_accounts_list)

    p_new = accounts_sub.add_parser("create", help="Create accounts")
    p_new.add_argument("--wallet-dir", required=True)
    p_new.add_argument("--password-file", help="Read the password from a file (newline trimmed)")
    p_new.add_argument("--num-accounts", type=int, default=1)
    p_new.set_defaults(func=cmd_accounts_create)

    # remote-signer ...
    p_signer = sub.add_parser("remote-signer", help="Run the reference remote signer")
    signer_sub = p_signer.add_subparsers(dest="signer_command", required=True)

    p_serve = signer_sub.add_parser("serve", help="Serve sign requests over mutual TLS")
    p_serve.add_argument("--wallet-dir", required=True)
    p_serve.add_argument("--password-file", help="Read the password from a file (newline trimmed)")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=DEFAULT_SIGNER_PORT)
    p_serve.add_argument("--cert", required=True, help="Server certificate (PEM)")
    p_serve.add_argument("--key", required=True, help="Server private key (PEM)")
    p_serve.add_argument("--ca-cert", required=True, help="CA that signs client certificates (PEM)")
    p_serve.set_defaults(func=cmd_remote_signer_serve)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    """Application entry point."""
    args = build_parser().parse_args(argv)
    try:
        configure_logging(parse_level(args.log_level), args.log_file)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        return args.func(args)
    except WalletError as e:
        print(f"Error: {e.render()}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e.strerror or e}: {e.filename}" if e.filename else f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
