import argparse
import logging
import sys

import trio

from ._config import build_proxy_config, load_configuration_from_environment, load_configuration_from_file
from ._errors import StartupConfigError
from ._proxy import OverlayProxy


logger = logging.getLogger("overlayproxy")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="overlayproxy", description="HTTP/HTTPS forward proxy, direct or through an overlay network.")
    parser.add_argument("--env-file", help="read settings from this KEY=VALUE file instead of the environment")
    parser.add_argument("--host", default="0.0.0.0", help="interface to listen on (default: %(default)s)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    logger.info("Initializing HTTP proxy")

    try:
        if args.env_file:
            configuration = load_configuration_from_file(args.env_file)
        else:
            configuration = load_configuration_from_environment()

        logger.info("Proxy port: %d", configuration.port)
        if configuration.credentials.username:
            logger.info("Authentication: enabled (user: %s)", configuration.credentials.username)
        else:
            logger.info("Authentication: disabled")

        config = build_proxy_config(configuration)
    except (StartupConfigError, OSError) as e:
        logger.critical("Failed to start: %s", e)
        return 1

    proxy = OverlayProxy(config)
    try:
        trio.run(proxy.listen, args.host, config.listen_port)
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt - shutting down")
    except OSError as e:
        logger.critical("Server error: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
