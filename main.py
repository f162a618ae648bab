#!/usr/bin/env python3
"""
Development launcher for the BeagleY bridge.

- Runs the bridge in the foreground with DEBUG logging and access logs
- Ctrl-C exits cleanly
- Ctrl-R reloads config.yaml and restarts the bridge
"""

import os
import signal
import sys
import termios
import threading
import tty

from bridge.config import reload_cfg, runtime_settings
from bridge.web_server import start_bridge_in_thread


class KeyWatcher(threading.Thread):
    def __init__(self):
        super().__init__(daemon=True)
        self.fd = sys.stdin.fileno()
        self.old_settings = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd)
        self.restart_requested = False

    def run(self):
        try:
            while True:
                ch = os.read(self.fd, 1)
                if not ch:
                    continue
                if ch == b"\x03":  # Ctrl-C
                    os.kill(os.getpid(), signal.SIGINT)
                elif ch == b"\x12":  # Ctrl-R
                    self.restart_requested = True
                    os.kill(os.getpid(), signal.SIGTERM)
        finally:
            self.restore()

    def restore(self):
        termios.tcsetattr(self.fd, termios.TCSADRAIN, self.old_settings)


def _start_dev_bridge():
    """Start the bridge with the dev launcher defaults."""

    cfg = reload_cfg()
    web_cfg = runtime_settings(cfg)["web_server"]
    return start_bridge_in_thread(
        host=web_cfg["listen_host"],
        port=web_cfg["listen_port"],
        cfg=cfg,
        access_log=True,
        log_level="DEBUG",
    )


def _terminate(_signum, _frame):
    raise KeyboardInterrupt


def main():
    print("[dev] Running bridge (Ctrl-C to exit, Ctrl-R to restart)")
    signal.signal(signal.SIGTERM, _terminate)

    watcher = KeyWatcher() if sys.stdin.isatty() else None
    if watcher is not None:
        watcher.start()

    try:
        while True:
            if watcher is not None:
                watcher.restart_requested = False
            handle = _start_dev_bridge()
            try:
                signal.pause()
            except KeyboardInterrupt:
                pass
            finally:
                handle.stop()

            if watcher is not None and watcher.restart_requested:
                print("[dev] Restarting bridge ...")
                continue
            print("[dev] Exiting.")
            break
    finally:
        if watcher is not None:
            watcher.restore()


if __name__ == "__main__":
    main()
