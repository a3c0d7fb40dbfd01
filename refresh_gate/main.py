"""
Command-line entry point for the Refresh Gate.

Prints a usable access token for a storage key, reusing the saved one or
refreshing it against the token endpoint, and manages saved tokens.
"""

import os
import sys
import argparse
import asyncio
import json
import logging

from refresh_gate.api_client import AiohttpTokenEndpointClient
from refresh_gate.auth.token_gate import TokenRefreshGate
from refresh_gate.auth.token_storage import create_token_store
from refresh_gate.config import GateConfiguration
from refresh_gate.shared.exceptions import (
    RefreshGateError, ConfigurationError, NetworkError,
    HttpStatusError, EmptyResponseError, ParseError, create_error_response
)
from refresh_gate.shared.logging_config import setup_logging, LogLevel, LogFormat
from refresh_gate.shared.models import RefreshParameters, TokenRecord

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIGURATION = 2
EXIT_NETWORK = 3
EXIT_REFRESH_REJECTED = 4
EXIT_NOT_FOUND = 5


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="refresh-gate",
        description="OAuth2 refresh-token cache gate",
        epilog="""
Examples:
  %(prog)s --token --key conf:/connectors/sf/token --host https://login.example.com --refresh-token R
  %(prog)s --refresh --key conf:/connectors/sf/token --token-endpoint https://idp/token --refresh-token R
  %(prog)s --show --key conf:/connectors/sf/token
  %(prog)s --invalidate --key conf:/connectors/sf/token
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    operation_group = parser.add_mutually_exclusive_group(required=True)
    operation_group.add_argument("--token", action="store_true",
                                 help="Print the saved access token, refreshing when none is saved")
    operation_group.add_argument("--refresh", action="store_true",
                                 help="Always refresh and print the new access token")
    operation_group.add_argument("--show", action="store_true",
                                 help="Show saved token metadata without the token value")
    operation_group.add_argument("--invalidate", action="store_true",
                                 help="Remove the saved access token")

    refresh_group = parser.add_argument_group('Refresh')
    refresh_group.add_argument("--key", type=str, metavar="KEY",
                               help="Storage key of the access token")
    refresh_group.add_argument("--host", type=str, metavar="URL",
                               help="Host the token endpoint path is appended to")
    refresh_group.add_argument("--token-endpoint", type=str, metavar="URL",
                               help="Full token endpoint URL")
    refresh_group.add_argument("--client-id", type=str, metavar="ID",
                               default=os.environ.get('REFRESH_GATE_CLIENT_ID'))
    refresh_group.add_argument("--client-secret", type=str, metavar="SECRET",
                               default=os.environ.get('REFRESH_GATE_CLIENT_SECRET'))
    refresh_group.add_argument("--refresh-token", type=str, metavar="TOKEN",
                               default=os.environ.get('REFRESH_GATE_REFRESH_TOKEN'))
    refresh_group.add_argument("--custom-url", type=str, metavar="BODY",
                               help="Send this body verbatim instead of the assembled one")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Configuration file path")
    config_group.add_argument("--storage", choices=["secure", "memory"],
                              help="Token storage backend")
    config_group.add_argument("--timeout", type=float, metavar="SECONDS",
                              help="Token endpoint request timeout")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output results as JSON")
    output_group.add_argument("--verbose", "-v", action="store_true",
                              help="Enable debug logging")
    output_group.add_argument("--quiet", "-q", action="store_true",
                              help="Only log errors")
    output_group.add_argument("--log-file", type=str, metavar="FILE",
                              help="Write logs to file")

    args = parser.parse_args(argv)

    if args.quiet and args.verbose:
        parser.error("--quiet and --verbose are mutually exclusive")

    return args


def configure_logging(args, config: GateConfiguration) -> None:
    """Configure logging from configuration and arguments."""
    if args.verbose:
        level = LogLevel.DEBUG
    elif args.quiet:
        level = LogLevel.ERROR
    else:
        try:
            level = LogLevel(config.get_log_level())
        except ValueError:
            level = LogLevel.INFO

    try:
        log_format = LogFormat(config.get_log_format())
    except ValueError:
        log_format = LogFormat.STANDARD

    setup_logging(
        log_level=level,
        log_format=log_format,
        log_file=args.log_file or config.get_log_file(),
        max_file_size=config.get_log_max_size(),
        backup_count=config.get_log_backup_count(),
        audit_file=config.get_audit_file(),
    )


def build_gate(config: GateConfiguration) -> TokenRefreshGate:
    """Wire a gate with the configured token store and an aiohttp client."""
    token_store = create_token_store(
        backend=config.get_storage_backend(),
        service_name=config.get_storage_service_name(),
        storage_path=config.get_storage_path(),
        use_keyring=config.use_keyring(),
        passphrase=config.get_storage_passphrase(),
    )
    http_client = AiohttpTokenEndpointClient(timeout=config.get_timeout())
    return TokenRefreshGate(token_store, http_client)


def _record_to_dict(record: TokenRecord) -> dict:
    return {
        'access_token': record.token,
        'timestamp': record.timestamp,
        'api_url': record.api_base_url,
        'expires_at': record.expires_at.isoformat() if record.expires_at else None,
    }


def _exit_code_for(error: RefreshGateError) -> int:
    if isinstance(error, ConfigurationError):
        return EXIT_CONFIGURATION
    if isinstance(error, NetworkError):
        return EXIT_NETWORK
    if isinstance(error, (HttpStatusError, EmptyResponseError, ParseError)):
        return EXIT_REFRESH_REJECTED
    return EXIT_ERROR


async def run_operation(args, config: GateConfiguration, gate: TokenRefreshGate) -> int:
    """Run the selected operation and print its result."""
    if not args.key:
        raise ConfigurationError("--key is required", config_key="key")

    if args.show:
        entry = gate.token_store.get(args.key)
        if entry is None:
            print(f"No saved access token under {args.key}", file=sys.stderr)
            return EXIT_NOT_FOUND
        summary = {
            'key': args.key,
            'media_type': entry.media_type,
            'metadata': entry.metadata,
            'stored_at': entry.stored_at.isoformat(),
        }
        print(json.dumps(summary) if args.json else "\n".join(f"{k}: {v}" for k, v in summary.items()))
        return EXIT_OK

    if args.invalidate:
        removed = gate.invalidate(args.key)
        if args.json:
            print(json.dumps({'key': args.key, 'removed': removed}))
        elif not args.quiet:
            print("Access token removed" if removed else f"No saved access token under {args.key}")
        return EXIT_OK if removed else EXIT_NOT_FOUND

    params = RefreshParameters(
        host=args.host,
        refresh_token=args.refresh_token,
        client_id=args.client_id,
        client_secret=args.client_secret,
        custom_url=args.custom_url,
        token_endpoint_url=args.token_endpoint or config.get_token_endpoint_url(),
    )

    if args.refresh:
        record = await gate.refresh(params, args.key)
    else:
        record = await gate.get_token(params, args.key)

    print(json.dumps(_record_to_dict(record)) if args.json else record.token)
    return EXIT_OK


def main(argv=None) -> int:
    """Main entry point for the command line."""
    args = parse_arguments(argv)

    try:
        config = GateConfiguration(args.config)
        if args.storage:
            config.set_override('storage.backend', args.storage)
        if args.timeout is not None:
            config.set_override('endpoint.timeout', args.timeout)

        configure_logging(args, config)
        gate = build_gate(config)
        return asyncio.run(run_operation(args, config, gate))

    except RefreshGateError as e:
        if args.json:
            print(json.dumps(create_error_response(e), default=str))
        else:
            print(f"Error: {e.user_message}", file=sys.stderr)
        return _exit_code_for(e)
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
