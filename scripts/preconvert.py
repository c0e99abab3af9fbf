#!/usr/bin/env python3
"""
CLI to derive seekable MP4 copies for every .mkv/.avi/.mov/.m4v under a
media root without running the server.

Usage:
  python scripts/preconvert.py \
    [--root /path/to/videos] \
    [--concurrency 2] [--list]

Notes:
- Respects MEDIA_ROOT / MEDIA_CONFIG if set; --root overrides.
- Outputs land in the same per-category .cache folders the server uses, so a
  later playback request finds them.
"""

from __future__ import annotations

import argparse
import importlib
import os
import sys
from pathlib import Path


def import_app_module():
    return importlib.import_module("app")


def main(argv: list[str]) -> int:
    ap = argparse.ArgumentParser(description="Pre-derive cached MP4s without running the server")
    ap.add_argument("--root", default=os.environ.get("MEDIA_ROOT", os.getcwd()), help="Media root directory")
    ap.add_argument("--concurrency", type=int, default=None, help="Max parallel conversions")
    ap.add_argument("--list", action="store_true", help="Only list sources that still need a cached copy")
    args = ap.parse_args(argv)

    root = Path(args.root).expanduser().resolve()
    if not root.exists() or not root.is_dir():
        print(f"[cli] Root not found or not a dir: {root}", file=sys.stderr)
        return 2
    os.environ["MEDIA_ROOT"] = str(root)

    m = import_app_module()
    cfg = m.STATE["config"]
    if args.concurrency:
        cfg.preconvert.max_concurrent = max(1, int(args.concurrency))
    pre = m.STATE["preconverter"]

    if args.list:
        for rel in pre.pending():
            print(rel)
        return 0

    if not m.ffmpeg_available():
        print("[cli] ffmpeg not found on PATH", file=sys.stderr)
        return 2
    counts = pre.run_once()
    print(f"[cli] converted={counts['converted']} failed={counts['failed']} skipped={counts['skipped']}")
    return 1 if counts["failed"] else 0


if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
    raise SystemExit(main(sys.argv[1:]))
