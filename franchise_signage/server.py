"""
@app_main
Application entry point
"""

import sys
import signal
import logging

from waitress import serve

from .app import create_app
from .config import AppConfig, setup_logging
from .core import SignageCore

logger = logging.getLogger(__name__)


def main() -> None:
    config = AppConfig()
    setup_logging(config)

    if not config.API_KEY:
        logger.warning("API_KEY is not set; admin routes will reject every request")

    core = SignageCore(config)
    try:
        startup = core.recover_and_migrate()
    except Exception as e:
        logger.critical(f"[Server] Database initialization failed: {e}")
        sys.exit(1)
    if startup['failed'] is not None:
        logger.warning(f"[Server] Migration {startup['failed']} failed; schema left at version {startup['version']}")
    core.start_background()

    def shutdown(signum, frame):
        logger.info(f"[Server] Signal {signum} received, shutting down gracefully...")
        core.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGTERM, shutdown)

    app = create_app(core)
    server_ip = AppConfig.get_server_ip()

    print(f"🚀 Franchise Signage Server starting on: {server_ip}:{config.PORT}")
    print(f"📱 Devices connect to: http://{server_ip}:{config.PORT}")
    print(f"🗄️  Database version: {startup['version']} ({startup['recovery']})")

    try:
        serve(app, host=config.HOST, port=config.PORT, threads=config.THREADS)
    finally:
        core.shutdown()


if __name__ == '__main__':
    main()
