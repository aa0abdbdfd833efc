#!/usr/bin/env python3
"""
Command line entry point for the density tile server.

Flags override environment variables (and .env); anything not given on the
command line falls back to Settings.from_env().
"""

import argparse
import logging
from pathlib import Path

import uvicorn

from density_tiles.config import Settings
from density_tiles.main import create_app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="density-tiles",
        description="Serve rendered map tiles from a persistent cache, rendering on a miss.",
    )
    parser.add_argument("--host", help="interface to bind (default 0.0.0.0)")
    parser.add_argument("--port", type=int, help="server port (default 5000)")
    parser.add_argument("--cache", type=Path, dest="cache_dir", help="cache directory (default ./cache)")
    parser.add_argument("--renderer-url", help="base URL of the tile renderer service")
    parser.add_argument("--cql-host", help="data store host passed to the renderer")
    parser.add_argument("--keyspace", help="keyspace name passed to the renderer")
    parser.add_argument("--table", help="table name passed to the renderer")
    parser.add_argument("--zoom", type=int, dest="base_zoom", help="base tile zoom passed to the renderer")
    parser.add_argument(
        "--timeout", type=float, dest="request_timeout", help="per-request deadline in seconds (default 15)"
    )
    parser.add_argument(
        "--log-level",
        choices=["critical", "error", "warning", "info", "debug"],
        help="log level (default info)",
    )
    parser.add_argument("--env-file", help="path to a .env file")
    return parser


def load_settings(argv=None) -> Settings:
    args = build_parser().parse_args(argv)
    overrides = vars(args)
    env_file = overrides.pop("env_file")
    return Settings.from_env(env_file).with_overrides(**overrides)


def main(argv=None):
    settings = load_settings(argv)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        timeout_keep_alive=int(settings.request_timeout),
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
