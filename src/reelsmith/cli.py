import argparse
import asyncio
import json
import logging
import subprocess
import sys

from .config import resolve_config
from .ffmpeg_runner import resolve_ffmpeg_exe, resolve_ffprobe_exe
from .services import build_services


def check_tool(exe: str) -> bool:
    """Verify a media tool starts and answers ``-version``."""
    try:
        subprocess.run(
            [exe, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
        return True
    except (FileNotFoundError, subprocess.CalledProcessError, OSError):
        return False


def config_overrides(args) -> dict:
    """Nested config overrides from CLI flags, skipping unset ones."""
    overrides: dict = {}
    if getattr(args, "render_dir", None):
        overrides.setdefault("paths", {})["render_dir"] = args.render_dir
    if getattr(args, "host", None):
        overrides.setdefault("server", {})["host"] = args.host
    if getattr(args, "port", None):
        overrides.setdefault("server", {})["port"] = args.port
    return overrides


def run_serve(config) -> None:
    import uvicorn

    from .api import create_app

    app = create_app(config)
    uvicorn.run(app, host=config.server.host, port=config.server.port)


def run_check(config) -> bool:
    print("Checking dependencies...")
    ok = True
    ffmpeg = resolve_ffmpeg_exe(config.toolchain.ffmpeg_path)
    if check_tool(ffmpeg):
        print(f"✅ ffmpeg found: {ffmpeg}")
    else:
        print(f"❌ ffmpeg NOT found ({ffmpeg}).")
        ok = False
    ffprobe = resolve_ffprobe_exe(config.toolchain.ffprobe_path)
    if check_tool(ffprobe):
        print(f"✅ ffprobe found: {ffprobe}")
    else:
        print(f"❌ ffprobe NOT found ({ffprobe}).")
        ok = False
    return ok


def run_cache_clear(config, force: bool) -> bool:
    services = build_services(config)
    pending = [job for job in services.store.read_jobs() if not job.status.is_terminal]
    if pending and not force:
        print(
            f"Refusing to clear: {len(pending)} job(s) not finished in "
            f"{config.paths.jobs_file}. Use --force to clear anyway."
        )
        return False

    result = asyncio.run(services.cache_admin.clear_cache(force=True))
    before = result["before"]["total"]
    after = result["after"]["total"]
    print(f"Removed {before['fileCount'] - after['fileCount']} file(s).")
    print(f"Disk usage: {before['totalBytes']} -> {after['totalBytes']} bytes")
    return True


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="reelsmith", description="Local render server for two-clip + BGM compositions"
    )
    parser.add_argument("--render-dir", type=str, help="Override paths.render_dir")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP render server")
    serve_parser.add_argument("--host", type=str, help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Listen port (default: RENDER_PORT or 5050)")

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify ffmpeg/ffprobe")

    # CACHE subcommands (stats, clear)
    cache_parser = subparsers.add_parser("cache", help="Inspect or clear render artifacts")
    cache_subparsers = cache_parser.add_subparsers(dest="cache_command", help="Cache commands")
    cache_subparsers.add_parser("stats", help="Show disk usage per bucket")
    clear_parser = cache_subparsers.add_parser("clear", help="Delete all render artifacts")
    clear_parser.add_argument(
        "--force", "-f", action="store_true", help="Clear even if jobs look unfinished"
    )

    # PURGE
    purge_parser = subparsers.add_parser("purge", help="Delete one asset's uploads and cache")
    purge_parser.add_argument("asset_id", type=str, help="Asset id used at upload time")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return

    config = resolve_config(config_overrides(args))

    if args.command == "serve":
        run_serve(config)

    elif args.command == "check":
        if not run_check(config):
            sys.exit(1)

    elif args.command == "cache":
        if args.cache_command == "stats":
            services = build_services(config)
            print(json.dumps(services.cache_admin.get_stats(), indent=2))

        elif args.cache_command == "clear":
            if not run_cache_clear(config, force=args.force):
                sys.exit(1)

        else:
            cache_parser.print_help()

    elif args.command == "purge":
        services = build_services(config)
        removed = services.cache_admin.purge_asset(args.asset_id)
        print(f"Purged {removed} file(s) for asset {args.asset_id}.")


if __name__ == "__main__":
    main()
