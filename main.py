# main.py
import sys
import signal
import asyncio
import logging

logger = logging.getLogger(__name__)


def setup_logging():
    """Console + rotating file logging, configured before anything else runs"""
    from core.config_manager import get_app_data_dir, get_config
    from logging.handlers import RotatingFileHandler

    config = get_config()

    logs_dir = get_app_data_dir() / "logs"
    logs_dir.mkdir(exist_ok=True)

    log_file = logs_dir / config.get('logging.file', 'companygw.log')

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=config.get('logging.max_bytes', 5 * 1024 * 1024),
        backupCount=config.get('logging.backup_count', 5),
        encoding='utf-8'
    )
    file_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    logging.basicConfig(
        level=str(config.get('logging.level', 'INFO')).upper(),
        handlers=[console_handler, file_handler]
    )


def setup_exception_handler():
    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Unhandled exception:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


async def serve(server) -> int:
    """Run the gateway until SIGINT/SIGTERM"""
    if not await server.start():
        logger.error(f"❌ Gateway failed to start: {server.last_error_details}")
        return 1

    loop = asyncio.get_running_loop()

    # Blocking check, only informative
    await loop.run_in_executor(None, server.check_upstream_status)

    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still stops asyncio.run()
            pass

    try:
        await stop_event.wait()
    finally:
        await server.stop()

    return 0


def main():
    setup_logging()
    setup_exception_handler()

    from core.errors import GatewayConfigError
    from core.proxy_manager import get_gateway_server

    logger.info("🚀 Starting Companygw gateway")

    server = get_gateway_server()

    try:
        server.create_app()
    except GatewayConfigError as e:
        logger.critical(f"❌ Configuration error: {e.message}")
        return 1

    try:
        return asyncio.run(serve(server))
    except KeyboardInterrupt:
        logger.info("🛑 Interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
