"""
Command line entry point for MedVerify.

Verifies one medical license against the registry and prints the result as
JSON.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from ..errors import DeadlineExceeded, InvalidRequestError
from ..models import ErrorKind
from ..settings import DEFAULT_CONFIG_PATH, load_verification_config, validate_verification_config
from .orchestrator import build_orchestrator

logger = logging.getLogger(__name__)

EXIT_VALID = 0
EXIT_NOT_VALID = 1
EXIT_ERROR = 2

# Outcomes where the registry could not give an answer
SERVICE_ERROR_KINDS = {ErrorKind.SERVICE_UNAVAILABLE, ErrorKind.PARSE_ERROR, ErrorKind.BROWSER_CRASH}


def setup_logging(level: str, log_file: str):
    """
    Configure console and file logging.

    Args:
        level: Log level name
        log_file: Path of the log file
    """
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file)
        ]
    )


def main(argv=None) -> int:
    """Main entry point for MedVerify license verification."""
    parser = argparse.ArgumentParser(description="MedVerify Medical License Verification")
    parser.add_argument("--document-type", required=True, choices=["national-id", "professional-id"],
                        help="Kind of document to search by")
    parser.add_argument("--document", required=True, help="Document number, e.g. V-12345678 or MPPS-12345")
    parser.add_argument("--first-name", required=True, help="Claimed first name(s)")
    parser.add_argument("--last-name", required=True, help="Claimed last name(s)")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Configuration file path")
    parser.add_argument("--timeout", type=float, help="Overall deadline in seconds")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    args = parser.parse_args(argv)

    config = load_verification_config(args.config)
    logging_config = config.get("logging", {})
    setup_logging(args.log_level or logging_config.get("level", "INFO"),
                  logging_config.get("file", "logs/medverify.log"))

    if not validate_verification_config(config):
        logger.error("Invalid configuration, aborting")
        return EXIT_ERROR

    orchestrator = build_orchestrator(config)
    try:
        result = orchestrator.verify_license(
            document_type=args.document_type,
            document_number=args.document,
            first_name=args.first_name,
            last_name=args.last_name,
            timeout=args.timeout,
        )
    except InvalidRequestError as e:
        logger.error(f"Invalid request: {e}")
        return EXIT_ERROR
    except DeadlineExceeded as e:
        logger.error(f"Verification did not finish in time: {e}")
        return EXIT_ERROR
    finally:
        stats = orchestrator.get_statistics()
        orchestrator.shutdown()

    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))

    # Print summary
    print("\n" + "=" * 50, file=sys.stderr)
    print("VERIFICATION SUMMARY", file=sys.stderr)
    print("=" * 50, file=sys.stderr)
    print(f"Outcome: {'VALID' if result.is_valid else (result.error_kind.value if result.error_kind else 'NOT VALID')}",
          file=sys.stderr)
    print(f"Registry Searches: {stats['registry_searches']}", file=sys.stderr)
    print(f"Cache Hits: {stats['cache_hits']}", file=sys.stderr)
    print(f"Recent Errors: {stats['recent_errors'] or 'none'}", file=sys.stderr)
    print("=" * 50, file=sys.stderr)

    if result.is_valid:
        return EXIT_VALID
    if result.error_kind in SERVICE_ERROR_KINDS:
        return EXIT_ERROR
    return EXIT_NOT_VALID


if __name__ == "__main__":
    sys.exit(main())
