#!/usr/bin/env python3
"""
Development launcher for the streaming server.

- Serves recordings from ./recordings unless RECORDINGS_DIR is set
- Logs at DEBUG unless LOG_LEVEL is set
- Shortens the encoder warm-up so local test captures start quickly
- Ctrl-C exits cleanly
"""

import os
import sys

from outback.web_streamer import cli_main

DEV_DEFAULTS = {
    "RECORDINGS_DIR": os.path.join(os.getcwd(), "recordings"),
    "LOG_LEVEL": "DEBUG",
    "LIVE_WARMUP_SEC": "1.0",
}


def main():
    for key, value in DEV_DEFAULTS.items():
        os.environ.setdefault(key, value)
    print(f"[dev] Recordings directory: {os.environ['RECORDINGS_DIR']}")
    print("[dev] Running web_streamer (Ctrl-C to exit)")
    return cli_main()


if __name__ == "__main__":
    sys.exit(main())
