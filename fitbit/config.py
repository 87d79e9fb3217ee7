import os

from dotenv import load_dotenv

# Load environment variables from the .env file
load_dotenv()

DEFAULT_SCOPES = "activity profile"


class ConfigError(RuntimeError):
    pass


def require_env(name: str) -> str:
    # Read on every call so a missing value only fails the request that needs it
    value = os.getenv(name)
    if not value:
        raise ConfigError(f"Missing env: {name}")
    return value


def client_id() -> str:
    return require_env("FITBIT_CLIENT_ID")


def client_secret() -> str:
    return require_env("FITBIT_CLIENT_SECRET")


def redirect_uri() -> str:
    return require_env("FITBIT_REDIRECT_URI")


def scopes() -> str:
    """Space-delimited scope list.

    Steps and burn need "activity", the weight sync needs "weight"; a missing
    scope surfaces as INSUFFICIENT_SCOPE.
    """
    raw = os.getenv("FITBIT_SCOPES") or DEFAULT_SCOPES
    return " ".join(raw.split())


def app_origin() -> str:
    return require_env("APP_ORIGIN").strip().rstrip("/")


def allowed_app_origins() -> set:
    allowed = {app_origin()}
    for part in os.getenv("APP_ORIGINS", "").split(","):
        origin = part.strip().rstrip("/")
        if origin:
            allowed.add(origin)
    return allowed
