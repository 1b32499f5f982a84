import argparse
import logging
import sys

from dicomhang.cli.hang import hang_command, protocols_command


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dicomhang", description="Apply hanging protocols to DICOM studies.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    hang = subparsers.add_parser("hang", help="Hang a DICOM session and print the viewport assignment.")
    hang.add_argument("--dicoms", required=True, help="Directory containing the DICOM session.")
    hang.add_argument("--protocols", nargs="*", help="Protocol JSON files or directories.")
    hang.add_argument("--library", action="store_true", help="Register the bundled protocols.")
    hang.add_argument("--protocol-id", dest="protocol_id", help="Apply this protocol instead of selecting one.")
    hang.add_argument("--stage", type=int, default=0, help="Stage to show (default: 0).")
    hang.add_argument("--report", help="Path to save a JSON report of the hanging.")
    hang.set_defaults(func=hang_command)

    protocols = subparsers.add_parser("protocols", help="List bundled protocols.")
    protocols.set_defaults(func=protocols_command)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
