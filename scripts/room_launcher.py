"""Start a room server plus one host and several member clients for local trials."""
from __future__ import annotations

import argparse
import atexit
import signal
import subprocess
import sys
import time
from pathlib import Path

ProcessRecord = tuple[str, subprocess.Popen]

PROCESSES: list[ProcessRecord] = []


def _cleanup() -> None:
    while PROCESSES:
        _, proc = PROCESSES.pop()
        if proc.poll() is not None:
            continue
        proc.terminate()
        try:
            proc.wait(timeout=5.0)
        except subprocess.TimeoutExpired:
            proc.kill()


def _handle_signal(signum: int, frame: object) -> None:  # pragma: no cover - signal runtime
    _cleanup()
    sys.exit(0)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Launch a room server, a host client and member clients")
    parser.add_argument("--python", default=sys.executable, help="Python interpreter to use for subprocesses")
    parser.add_argument("--room", default="main")
    parser.add_argument("--max-mic-slots", type=int, default=2)
    parser.add_argument("--tcp-port", type=int, default=55000)
    parser.add_argument("--admin-port", type=int, default=8700)
    parser.add_argument("--members", type=int, default=3, help="Number of member clients to launch")
    parser.add_argument("--ui-start-port", type=int, default=8100, help="UI port of the host; members follow")
    parser.add_argument("--server-startup-delay", type=float, default=2.0, help="Delay before launching clients")
    parser.add_argument("--workspace", default=str(Path(__file__).resolve().parent.parent), help="Working directory")
    return parser.parse_args()


def _launch(name: str, cmd: list[str], cwd: str) -> None:
    print(f"Starting {name}: {' '.join(cmd)}")
    PROCESSES.append((name, subprocess.Popen(cmd, cwd=cwd)))


def _client_cmd(args: argparse.Namespace, identity: str, role: int, ui_port: int) -> list[str]:
    return [
        args.python,
        "-m",
        "micseat.client",
        "127.0.0.1",
        identity,
        "--room",
        args.room,
        "--role",
        str(role),
        "--tcp-port",
        str(args.tcp_port),
        "--admin-url",
        f"http://127.0.0.1:{args.admin_port}",
        "--ui-port",
        str(ui_port),
    ]


def main() -> None:
    args = _parse_args()
    atexit.register(_cleanup)
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handle_signal)
        except (OSError, ValueError):
            pass

    _launch(
        "server",
        [
            args.python,
            "-m",
            "micseat.server",
            "--host",
            "127.0.0.1",
            "--room",
            args.room,
            "--tcp-port",
            str(args.tcp_port),
            "--admin-port",
            str(args.admin_port),
            "--max-mic-slots",
            str(args.max_mic_slots),
        ],
        args.workspace,
    )
    time.sleep(max(args.server_startup_delay, 0.0))

    _launch("host", _client_cmd(args, "host", 2, args.ui_start_port), args.workspace)
    for index in range(args.members):
        identity = f"member-{index + 1}"
        _launch(identity, _client_cmd(args, identity, 1, args.ui_start_port + index + 1), args.workspace)

    print("All processes started. Press Ctrl+C to stop everything.")
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        _cleanup()


if __name__ == "__main__":
    main()
