import argparse
from pathlib import Path

from volumesetup.__version__ import __version__
from volumesetup.config.settings import load_config
from volumesetup.logging import LoggerFactory, setup_logging
from volumesetup.services.provisioning import provision
from volumesetup.storage.exceptions import VolumeSetupError


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="volumesetup",
        description="Find, encrypt, format and mount the persistent volume",
    )
    parser.add_argument("config", type=Path, help="Path to the JSON configuration")
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Only load and validate the configuration",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log raw command output")
    parser.add_argument("--log-dir", type=Path, default=None, help="Write log files to this directory")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def error_chain(error: BaseException) -> str:
    """Join an exception and its causes into one line."""
    parts = []
    seen = set()
    current = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        text = str(current) or type(current).__name__
        if text not in parts:
            parts.append(text)
        current = current.__cause__
    return ": ".join(parts)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    try:
        config = load_config(args.config)
        if config.debug and not (args.debug or args.trace):
            setup_logging(debug=True, log_dir=args.log_dir)
        if args.validate:
            log.success(f"Configuration {args.config} is valid")
            return EXIT_OK
        provision(config)
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return EXIT_INTERRUPTED
    except VolumeSetupError as error:
        log.critical(error_chain(error))
        return EXIT_ERROR
    except Exception:
        log.exception("Unexpected error during provisioning")
        return EXIT_ERROR
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
