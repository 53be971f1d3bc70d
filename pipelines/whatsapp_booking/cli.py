#!/usr/bin/env python
"""
CLI entry point for the WhatsApp booking assistant.

Commands:
    serve           Run the HTTP server (uvicorn)
    check-config    Print the resolved settings with secrets masked

Examples:
    python -m pipelines.whatsapp_booking.cli serve --port 8000
    python -m pipelines.whatsapp_booking.cli check-config --config booking.yaml

Settings resolve as defaults < YAML (--config or BOOKING_CONFIG_PATH) < env.
Useful environment variables:
    CALENDLY_API_KEY / CALENDLY_EVENT_TYPE_URI   Enable provider single-use links
    CALENDLY_WEBHOOK_SIGNING_KEY                 Verify provider webhooks
    MOCK_WHATSAPP=false                          Send real WhatsApp replies
    MOCK_LLM=false                               Classify messages with the LLM
    LOG_LEVEL=DEBUG                              Verbose logging
"""

import argparse
import sys
from pathlib import Path

import yaml

# Add project root to path for direct script execution
project_root = Path(__file__).parent.parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from core.logger import get_logger, set_log_level
from pipelines.whatsapp_booking.config import SERVICE_NAME, load_booking_settings, mask_secrets

logger = get_logger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="WhatsApp lead assistant with one-time-use booking links",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", "-c", default=None, help="YAML settings file")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")

    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    serve.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Do not run the periodic cleanup sweep",
    )

    sub.add_parser("check-config", help="Print resolved settings (secrets masked)")

    return parser.parse_args(argv)


def _check_config(settings: dict) -> int:
    logger.info("=" * 60)
    logger.info(f"{SERVICE_NAME} settings")
    logger.info("=" * 60)
    for key, value in sorted(mask_secrets(settings).items()):
        logger.info(f"  {key}: {value!r}")

    minting = "external" if settings.get("calendly_api_key") and settings.get("calendly_event_type_uri") else "local"
    logger.info("-" * 60)
    logger.info(f"  link minting mode: {minting}")
    logger.info(f"  webhook signatures: {'verified' if settings.get('webhook_signing_key') else 'NOT verified'}")
    return 0


def _serve(settings: dict, host: str, port: int, start_scheduler: bool) -> int:
    import uvicorn

    from pipelines.whatsapp_booking.pipeline import build_services
    from pipelines.whatsapp_booking.server import create_app

    app = create_app(build_services(settings), start_scheduler=start_scheduler)
    logger.info(f"Starting {SERVICE_NAME} on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_config=None)
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.log_level:
        set_log_level(args.log_level)

    try:
        settings = load_booking_settings(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"✗ Invalid configuration: {e}")
        return 1

    if args.command == "check-config":
        return _check_config(settings)
    return _serve(settings, args.host, args.port, start_scheduler=not args.no_scheduler)


if __name__ == "__main__":
    sys.exit(main())
