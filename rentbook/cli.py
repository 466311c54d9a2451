import argparse
import logging
import os
import sys

import uvicorn

from rentbook.core.config import ConfigError, config_path_from_env, load_settings
from rentbook.core.logging import configure_logging
from rentbook.db.init_db import init_db
from rentbook.services.container import build_services

logger = logging.getLogger(__name__)


def _parse_args(argv):
    parser = argparse.ArgumentParser(prog="rentbook", description="Rentbook reservation service")
    parser.add_argument("--config", default=None, help="YAML config (default: $CRM_CONFIG_PATH or $CONFIG_PATH)")
    parser.add_argument("--items", default=None, help="items catalog YAML (default: $ITEMS_PATH)")
    parser.add_argument("--migrate-only", action="store_true", help="create the schema, sync items and exit")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    config_path = args.config or config_path_from_env()
    items_path = args.items or os.environ.get("ITEMS_PATH") or None

    try:
        settings = load_settings(config_path, items_path)
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Configuration error: %s", e)
        return 1
    configure_logging(settings.logging)

    services = build_services(settings)
    try:
        init_db(services.database)
        services.catalog.sync_items(settings.items)
    except Exception:
        logger.exception("Migration failed.")
        services.close()
        return 1
    if args.migrate_only:
        services.close()
        return 0

    grpc_server = None
    if settings.api.enabled and settings.api.grpc.enabled:
        from rentbook.api.grpc_server import create_grpc_server

        grpc_server, port = create_grpc_server(services)
        grpc_server.start()
        logger.info("gRPC listening on %s:%d.", settings.api.grpc.host, port)

    try:
        if settings.api.enabled and settings.api.http.enabled:
            from rentbook.main import create_app

            http = settings.api.http
            uvicorn.run(
                create_app(services),
                host=http.host,
                port=http.port,
                timeout_keep_alive=http.read_header_timeout,
                timeout_graceful_shutdown=http.write_timeout,
                log_config=None,
            )
        else:
            # no HTTP surface: keep the worker (and gRPC) alive
            if services.worker is not None and settings.worker.enabled:
                services.worker.start()
            if grpc_server is not None:
                grpc_server.wait_for_termination()
            elif services.worker is not None:
                services.worker.join()
    except KeyboardInterrupt:
        pass
    finally:
        if grpc_server is not None:
            grpc_server.stop(grace=5)
        services.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
