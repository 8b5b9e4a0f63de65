"""Operator tool for the MFA secret store. Run with ``--help`` to list commands."""

import argparse
import getpass
import json
import sys
import time

import qrcode

from mfa_gateway.core import config, totp
from mfa_gateway.core.secret_store import SecretStore
from mfa_gateway.core.security import hash_password


def _store() -> SecretStore:
    return SecretStore.open(config.AUTH_DB_PATH)


def _print_qr(username: str, secret: str):
    uri = totp.provisioning_uri(secret, username, config.MFA_ISSUER)
    print(f"QR Code for {username}:")
    qr = qrcode.QRCode(box_size=1, border=1)
    qr.add_data(uri)
    qr.make(fit=True)
    qr.print_ascii(invert=True)
    print(f"\nSecret: {secret}")
    print(f"OTPAUTH URL: {uri}")


def list_users():
    store = _store()
    users = store.usernames()
    if not users:
        print("No users with MFA setup found.")
        return
    print("MFA users:")
    for username in users:
        print(f"  {username}")


def add_user(username: str, secret: str = None):
    store = _store()
    secret = secret or totp.random_secret()
    try:
        store.set(username, secret)
    except ValueError as e:
        print(f"Cannot add {username}: {e}")
        sys.exit(1)
    print(f"Added MFA for user: {username}")
    _print_qr(username, store.get(username))


def remove_user(username: str):
    if not _store().delete(username):
        print(f"User {username} not found")
        sys.exit(1)
    print(f"Removed MFA for user: {username}")


def show_qr(username: str):
    secret = _store().get(username)
    if secret is None:
        print(f"User {username} not found")
        sys.exit(1)
    _print_qr(username, secret)


def qr_from_secret(username: str, secret: str):
    if not totp.is_valid_secret(secret):
        print("Secret is not valid base32")
        sys.exit(1)
    _print_qr(username, secret.upper())


def test_code(username: str, code: str):
    secret = _store().get(username)
    if secret is None:
        print(f"User {username} not found")
        sys.exit(1)
    valid = totp.verify(secret, code, time.time(), config.MFA_WINDOW)
    print(f"Token test for {username}: {'VALID' if valid else 'INVALID'}")
    sys.exit(0 if valid else 1)


def export_secrets():
    secrets = _store().export()
    if not secrets:
        print("No MFA secrets found. Users need to set up MFA first by logging in.", file=sys.stderr)
        sys.exit(1)
    print(f"MFA_SECRETS={json.dumps(secrets, separators=(',', ':'))}")
    print("Keep these secrets secure - they provide access to your accounts!", file=sys.stderr)


def hash_password_cmd(password: str = None):
    if password is None:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Confirm password: "):
            print("Passwords do not match.")
            sys.exit(1)
    if not password:
        print("Password cannot be empty.")
        sys.exit(1)
    print(hash_password(password))


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(prog="mfa-gateway-admin", description="Manage MFA secrets for the gateway")
    commands = parser.add_subparsers(dest="command", metavar="command", required=True)

    cmd = commands.add_parser("list", help="List users with MFA configured")
    cmd.set_defaults(func=lambda args: list_users())

    cmd = commands.add_parser("add", help="Add or replace a user's secret; generated when omitted")
    cmd.add_argument("username")
    cmd.add_argument("secret", nargs="?")
    cmd.set_defaults(func=lambda args: add_user(args.username, args.secret))

    cmd = commands.add_parser("remove", help="Remove a user's secret")
    cmd.add_argument("username")
    cmd.set_defaults(func=lambda args: remove_user(args.username))

    cmd = commands.add_parser("qr", help="Print the enrollment QR code for a stored user")
    cmd.add_argument("username")
    cmd.set_defaults(func=lambda args: show_qr(args.username))

    cmd = commands.add_parser("qr-from-secret", help="Print a QR code for a secret without storing it")
    cmd.add_argument("username")
    cmd.add_argument("secret")
    cmd.set_defaults(func=lambda args: qr_from_secret(args.username, args.secret))

    cmd = commands.add_parser("test", help="Check a code against a user's secret")
    cmd.add_argument("username")
    cmd.add_argument("code")
    cmd.set_defaults(func=lambda args: test_code(args.username, args.code))

    cmd = commands.add_parser("export", help="Print every secret as an MFA_SECRETS line")
    cmd.set_defaults(func=lambda args: export_secrets())

    cmd = commands.add_parser("hash-password", help="Print a bcrypt hash for AUTH_PASSWORD_HASH")
    cmd.add_argument("password", nargs="?", help="Prompted for when omitted")
    cmd.set_defaults(func=lambda args: hash_password_cmd(args.password))

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
