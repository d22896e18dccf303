from __future__ import annotations

import argparse
import asyncio
import logging

from micseat.shared.protocol import DEFAULT_ADMIN_PORT, DEFAULT_TCP_PORT, DEFAULT_UI_PORT

from .app import ClientApp, build_identity


def main() -> None:
    parser = argparse.ArgumentParser(description="Mic admission room client")
    parser.add_argument("server_host", help="Hostname or IP of the room server")
    parser.add_argument("identity", help="Participant identity used to join the room")
    parser.add_argument("--tcp-port", type=int, default=DEFAULT_TCP_PORT, help="Server TCP port")
    parser.add_argument("--room", default="main", help="Room to join")
    parser.add_argument("--display-name", help="Name shown to other participants")
    parser.add_argument(
        "--role",
        type=int,
        default=1,
        choices=[0, 1, 2, 3],
        help="Participant role (0 guest, 1 member, 2 host, 3 admin)",
    )
    parser.add_argument(
        "--admin-url",
        help="Base URL of the admin backend (defaults to http://<server_host>:%d)" % DEFAULT_ADMIN_PORT,
    )
    parser.add_argument("--bearer-token", help="Bearer token sent to the admin backend")
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host to bind the local UI web server")
    parser.add_argument("--ui-port", type=int, default=DEFAULT_UI_PORT, help="Port for the local UI web server")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    args = parser.parse_args()

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    identity = build_identity(args.identity, args.display_name, args.role, args.room)
    admin_url = args.admin_url or f"http://{args.server_host}:{DEFAULT_ADMIN_PORT}"
    app = ClientApp(
        identity,
        server_host=args.server_host,
        tcp_port=args.tcp_port,
        admin_url=admin_url,
        bearer_token=args.bearer_token,
    )

    asyncio.run(app.run(host=args.ui_host, port=args.ui_port))


if __name__ == "__main__":
    main()
