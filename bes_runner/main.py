"""命令行入口：加载配置、初始化日志并执行一次批处理作业。"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Sequence

import httpx
from azure.core.exceptions import AzureError

from bes_runner.application.container import job_runner_scope
from bes_runner.config import Settings
from bes_runner.infra.logging.setup import configure_logging, shutdown_logging

EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bes-runner",
        description="Upload an input file to Azure blob storage and run a Batch Execution Service job.",
    )
    parser.add_argument("--env-file", type=Path, default=None, help="Settings file (default: .env)")
    parser.add_argument("--input", dest="local_input_path", type=Path, default=None, help="Local input file")
    parser.add_argument("--blob-name", dest="remote_blob_name", default=None, help="Destination blob name")
    parser.add_argument("--timeout-seconds", type=float, default=None, help="Polling timeout")
    parser.add_argument("--poll-interval-seconds", type=float, default=None, help="Delay between status checks")
    parser.add_argument("--download-dir", type=Path, default=None, help="Download finished results here")
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    """读取环境变量/.env，并用命令行参数覆盖同名配置。"""
    kwargs: dict[str, Any] = {}
    if args.env_file is not None:
        kwargs["_env_file"] = args.env_file
    for name in ("local_input_path", "remote_blob_name", "timeout_seconds", "poll_interval_seconds", "download_dir"):
        value = getattr(args, name)
        if value is not None:
            kwargs[name] = value
    return Settings(**kwargs)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args)
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    missing = settings.missing_required()
    if missing:
        print(f"Missing required settings: {', '.join(missing)}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    configure_logging(settings)
    try:
        with job_runner_scope(settings) as runner:
            report = runner.run()
        return report.exit_code
    except (httpx.HTTPError, AzureError, ValueError, OSError) as exc:
        print(f"Run aborted: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 1
    finally:
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main())
