"""Command line entry point.

    python -m wordmatch serve [--host HOST] [--port PORT] [--env-file .env]
    python -m wordmatch generate-keys [--env-file .env] [--bits 2048]
"""
import os
import sys
import logging
import argparse
from typing import Optional

from dotenv import load_dotenv

from .channel.config import ServerConfig, write_env_keys
from .channel.key_agreement import RSA_KEY_SIZE
from .server import run
from .version import __version__


def _configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wordmatch",
        description="WordMatch vocabulary server with a secure payload channel.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP server")
    serve.add_argument("--env-file", default=".env")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--vocabulary-path", default=None)

    keys = sub.add_parser(
        "generate-keys", help="write a fresh RSA keypair into the env file",
    )
    keys.add_argument("--env-file", default=".env")
    keys.add_argument("--bits", type=int, default=RSA_KEY_SIZE)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv(args.env_file)
    _configure_logging()

    if args.command == "generate-keys":
        path = write_env_keys(args.env_file, key_size=args.bits)
        print(f"RSA keys generated and saved to {path}")
        print(f"Keep {path} out of version control: it holds the private key.")
        return 0

    config = ServerConfig.from_env()
    overrides = {
        "host": args.host,
        "port": args.port,
        "vocabulary_path": args.vocabulary_path,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        config = ServerConfig.model_validate(
            {**config.model_dump(), **overrides}
        )
    run(config)
    return 0


if __name__ == "__main__":
    sys.exit(main())
