"""
Load environment variables, create the Flask app instance, and start the
development server.

Environment Variables
---------------------
HOST: The interface/IP the server should bind to. Defaults to "127.0.0.1".
PORT: The port number the server should listen on. Defaults to "2929".
DATABASE_URL: Settings database. Defaults to "sqlite:///finstat.db".
DATA_DATABASE_URL: Analytics database. Defaults to "sqlite:///finstat_data.db".
ENCRYPTION_KEY_PATH: Fernet key file for the stored API key.
API_TOKEN: When set, required as a bearer token on every API route.
TIMEZONE: IANA timezone for hour/day statistics. Defaults to "UTC".
LOG_LEVEL: Logging level name. Defaults to "INFO".
"""

import logging
from os import getenv

from dotenv import load_dotenv

from app import create_app

CONFIG_ENV = (
    "DATABASE_URL",
    "DATA_DATABASE_URL",
    "ENCRYPTION_KEY_PATH",
    "API_TOKEN",
    "TIMEZONE",
)


def load_config() -> dict:
    """
    Collect app config overrides from the environment.
    """
    config = {key: getenv(key) for key in CONFIG_ENV if getenv(key)}
    config["PORT"] = int(getenv("PORT", "2929"))
    return config


def main() -> None:
    """
    Resolve configuration from env variables, instantiate app via
    create_app(), and start the server.
    """
    load_dotenv()

    logging.basicConfig(
        level=getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    host = getenv("HOST", "127.0.0.1")
    config = load_config()

    app = create_app(config)
    app.run(host=host, port=config["PORT"])


if __name__ == "__main__":
    main()
