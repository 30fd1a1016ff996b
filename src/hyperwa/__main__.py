"""
Command line entry point.

    hyperwa run [--config PATH] [--qr-file PATH]
    hyperwa logout [--config PATH]
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
from pathlib import Path

import qrcode
from qrcode.image.svg import SvgImage

from . import __version__
from .bot import HyperWaBot
from .config import Config, load_config
from .connection import ConnectionUpdate
from .exceptions import ConfigError, HyperwaError, LoggedOutError, StartupError
from .log import setup_logging
from .util.asyncio import ensure_task

logger = logging.getLogger(__name__)


class QrPrinter:
    """Renders each new pairing QR code to the terminal (and optionally an SVG file)."""

    def __init__(self, svg_path: Path | None = None) -> None:
        self.svg_path = svg_path
        self._last: str | None = None

    async def __call__(self, update: ConnectionUpdate) -> None:
        if not update.qr or update.qr == self._last:
            return
        self._last = update.qr
        print("\nScan this QR in WhatsApp -> Settings -> Linked devices -> Link a device\n")

        if self.svg_path is not None:
            img = qrcode.make(update.qr, image_factory=SvgImage)
            self.svg_path.parent.mkdir(parents=True, exist_ok=True)
            self.svg_path.write_bytes(img.to_string())
            print(f"wrote {self.svg_path}")

        qr = qrcode.QRCode(border=1)
        qr.add_data(update.qr)
        qr.make(fit=True)
        qr.print_ascii(invert=True)


async def _run(cfg: Config, qr_file: Path | None) -> int:
    bot = HyperWaBot(cfg)
    bot.on("connection.update", QrPrinter(qr_file))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops; Ctrl+C still raises there.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    runner = ensure_task(bot.run(), name="hyperwa.run")
    stopper = ensure_task(stop.wait(), name="hyperwa.signal")
    try:
        await asyncio.wait({runner, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopper.cancel()

    if not runner.done():
        logger.info("signal received, shutting down")
        await bot.shutdown()

    try:
        await runner
    except LoggedOutError as e:
        logger.error("%s; run `hyperwa run` again to pair with a new QR code", e)
        return 1
    except StartupError as e:
        logger.error("startup failed: %s", e)
        return 1
    return 0


async def _logout(cfg: Config) -> int:
    bot = HyperWaBot(cfg)
    try:
        await bot.logout()
    except StartupError as e:
        logger.error("logout failed: %s", e)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(prog="hyperwa", description="HyperWa WhatsApp userbot")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = ap.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="connect and process commands until stopped")
    run_p.add_argument("--config", help="JSON config file (default: built-in defaults + env)")
    run_p.add_argument("--qr-file", help="also write pairing QR codes to this SVG file")

    out_p = sub.add_parser("logout", help="delete the stored WhatsApp session")
    out_p.add_argument("--config", help="JSON config file (default: built-in defaults + env)")

    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        ap.error(str(e))

    setup_logging(cfg.logging)

    try:
        if args.command == "logout":
            return asyncio.run(_logout(cfg))
        qr_file = Path(args.qr_file).expanduser() if args.qr_file else None
        return asyncio.run(_run(cfg, qr_file))
    except KeyboardInterrupt:
        return 130
    except HyperwaError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
