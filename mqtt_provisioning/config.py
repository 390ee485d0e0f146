import os
from pathlib import Path
from dotenv import load_dotenv
load_dotenv()  # reads .env in the project root

class Settings:
    DATA_DIR = Path(os.getenv("DATA_DIR", "./data")).expanduser().resolve()
    DATA_DIR.mkdir(parents=True, exist_ok=True)

    WEB_HOST = os.getenv("WEB_HOST", "0.0.0.0")
    WEB_PORT = int(os.getenv("WEB_PORT", "8080"))

    API_BEARER = os.getenv("API_BEARER", "")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    DATABASE_URL = os.getenv(
        "DATABASE_URL", f"sqlite:///{DATA_DIR / 'provisioning.sqlite3'}"
    )

    # ------------------------------------------------------------------
    # Mosquitto artifacts ------------------------------------------------

    MOSQUITTO_PASSWORD_FILE = Path(
        os.getenv("MOSQUITTO_PASSWORD_FILE", "/mosquitto/config/password.txt")
    )
    MOSQUITTO_ACL_FILE = Path(
        os.getenv("MOSQUITTO_ACL_FILE", "/mosquitto/config/acl.txt")
    )
    MOSQUITTO_ADMIN_USERNAME = os.getenv("MOSQUITTO_ADMIN_USERNAME", "admin")
    MOSQUITTO_ADMIN_PASSWORD = os.getenv("MOSQUITTO_ADMIN_PASSWORD", "admin")
    # Precomputed $7$ digest; takes precedence over the plaintext above.
    MOSQUITTO_ADMIN_PASSWORD_HASH = os.getenv("MOSQUITTO_ADMIN_PASSWORD_HASH", "")

    # docker | pidfile | none
    MOSQUITTO_RELOAD_METHOD = os.getenv("MOSQUITTO_RELOAD_METHOD", "docker").lower()
    MOSQUITTO_CONTAINER_NAME = os.getenv("MOSQUITTO_CONTAINER_NAME", "mosquitto")
    MOSQUITTO_PID_FILE = Path(
        os.getenv("MOSQUITTO_PID_FILE", "/var/run/mosquitto.pid")
    )
    MOSQUITTO_RELOAD_TIMEOUT = float(os.getenv("MOSQUITTO_RELOAD_TIMEOUT", "10"))

    MQTT_DEFAULT_TOPIC_TEMPLATE = os.getenv(
        "MQTT_DEFAULT_TOPIC_TEMPLATE", "owntracks/owntrack/{device_id}/#"
    )
    MQTT_SYNC_INTERVAL = int(os.getenv("MQTT_SYNC_INTERVAL", "0"))

    def resolve_data_path(self, path: str | os.PathLike[str]) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.DATA_DIR / candidate
        return candidate.expanduser().resolve()

settings = Settings()
