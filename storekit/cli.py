"""
StoreKit JWS Command Line Interface.

Provides commands for minting authorization tokens, inspecting and verifying
App Store signed payloads, and querying subscription status.
"""

import argparse
import json
import logging
import sys

from storekit.claims import MapClaims, RenewalInfoClaims, TransactionClaims
from storekit.client import SubscriptionStatusClient
from storekit.config import JWKS_URL, StoreKitConfig
from storekit.errors import StoreKitError
from storekit.issuer import issue
from storekit.keys import HttpKeySetFetcher, KeyDirectory
from storekit.verifier import EnvelopeVerifier

CLAIM_TYPES = {
    "generic": MapClaims,
    "transaction": TransactionClaims,
    "renewal": RenewalInfoClaims,
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format='%(levelname)s: %(message)s'
    )


def _load_config() -> StoreKitConfig:
    try:
        return StoreKitConfig.from_env()
    except (ValueError, OSError) as e:
        raise SystemExit(f"Error: {e}")


def cmd_token(args: argparse.Namespace) -> int:
    """Mint an authorization token from STOREKIT_* environment variables."""
    config = _load_config()
    try:
        token = issue(config.authorization_context())
    except (StoreKitError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.header:
        print(f"Authorization: Bearer {token}")
    else:
        print(token)
    return 0


def cmd_decode(args: argparse.Namespace) -> int:
    """Decode a signed payload without verifying it."""
    try:
        header, claims = EnvelopeVerifier.decode_unverified(args.token, CLAIM_TYPES[args.kind])
    except StoreKitError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print("⚠️  Warning: signature not verified", file=sys.stderr)
    print(json.dumps({"header": header, "payload": claims.to_dict()}, indent=2))
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify a signed payload against the published key set."""
    directory = KeyDirectory(HttpKeySetFetcher(url=args.jwks_url))
    verifier = EnvelopeVerifier(directory)

    try:
        claims = verifier.verify(args.token, CLAIM_TYPES[args.kind])
    except StoreKitError as e:
        if args.json:
            print(json.dumps({"valid": False, "error": e.to_dict()}, indent=2))
        else:
            print(f"❌ INVALID: {e}")
        return 1

    if args.json:
        print(json.dumps({"valid": True, "payload": claims.to_dict()}, indent=2))
    else:
        print("✅ VALID")
        print(f"   Issuer:  {claims.issuer}")
        print(f"   Subject: {claims.subject}")
        if claims.expires_at:
            print(f"   Expires: {claims.expires_at.isoformat()}")
        print(f"   Payload: {json.dumps(claims.to_dict())}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Query the subscription statuses of a customer."""
    config = _load_config()
    directory = KeyDirectory(HttpKeySetFetcher(url=args.jwks_url))

    try:
        with SubscriptionStatusClient(config, verifier=EnvelopeVerifier(directory)) as client:
            response = client.get_all_subscription_statuses(args.transaction_id, *args.status)
            result = response.to_dict()
            if args.verify:
                result["verified"] = [
                    {"transaction": t.to_dict(), "renewal": r.to_dict()}
                    for t, r in client.verify_response(response)
                ]
    except (StoreKitError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))
    return 0


def cmd_keys(args: argparse.Namespace) -> int:
    """List the currently published key ids."""
    directory = KeyDirectory(HttpKeySetFetcher(url=args.jwks_url))
    try:
        directory.refresh_all()
    except StoreKitError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    for kid in directory.key_ids:
        material = directory.get(kid)
        print(f"{kid}\t{material.key_type}\t{material.algorithm or '-'}")
    return 0


def main(argv=None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog='storekit',
        description='StoreKit JWS CLI - App Store Server API tokens and signed payloads'
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # token command
    p_token = subparsers.add_parser('token', help='Mint an App Store Server API token')
    p_token.add_argument('--header', action='store_true', help='Output as an Authorization header')

    # decode command
    p_decode = subparsers.add_parser('decode', help='Decode a signed payload without verifying')
    p_decode.add_argument('token', help='The compact JWS to decode')
    p_decode.add_argument('--kind', choices=sorted(CLAIM_TYPES), default='generic')

    # verify command
    p_verify = subparsers.add_parser('verify', help='Verify a signed payload')
    p_verify.add_argument('token', help='The compact JWS to verify')
    p_verify.add_argument('--kind', choices=sorted(CLAIM_TYPES), default='generic')
    p_verify.add_argument('--jwks-url', default=JWKS_URL, help='Published key set URL')
    p_verify.add_argument('--json', action='store_true', help='Output as JSON')

    # status command
    p_status = subparsers.add_parser('status', help='Get all subscription statuses')
    p_status.add_argument('transaction_id', help='Original or current transaction id')
    p_status.add_argument('--status', type=int, action='append', default=[],
                          help='Status filter, repeatable (1 active, 4 grace period, ...)')
    p_status.add_argument('--verify', action='store_true', help='Verify the signed payloads')
    p_status.add_argument('--jwks-url', default=JWKS_URL, help='Published key set URL')

    # keys command
    p_keys = subparsers.add_parser('keys', help='List published key ids')
    p_keys.add_argument('--jwks-url', default=JWKS_URL, help='Published key set URL')

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.command == 'token':
        return cmd_token(args)
    elif args.command == 'decode':
        return cmd_decode(args)
    elif args.command == 'verify':
        return cmd_verify(args)
    elif args.command == 'status':
        return cmd_status(args)
    elif args.command == 'keys':
        return cmd_keys(args)
    else:
        parser.print_help()
        return 0


if __name__ == '__main__':
    sys.exit(main())
