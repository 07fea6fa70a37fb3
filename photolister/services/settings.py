"""
Runtime configuration read from the environment (and a local .env file).

Everything here is a plain module-level constant so services can import what
they need; tests override individual values with monkeypatch.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes")


EBAY_APP_ID = os.getenv("EBAY_APP_ID", "")
EBAY_CERT_ID = os.getenv("EBAY_CERT_ID", "")
EBAY_REDIRECT_URI = os.getenv(
    "EBAY_REDIRECT_URI",
    os.getenv("EBAY_RU_NAME", ""),
)
EBAY_SANDBOX_MODE = _flag("EBAY_SANDBOX_MODE")
EBAY_MARKETPLACE_ID = os.getenv("EBAY_MARKETPLACE_ID", "EBAY_US")
EBAY_CURRENCY = os.getenv("EBAY_CURRENCY", "USD")
# "Everything Else > Other" is used when no comparable carried a category
EBAY_DEFAULT_CATEGORY_ID = os.getenv("EBAY_DEFAULT_CATEGORY_ID", "88433")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o")

IMGBB_API_KEY = os.getenv("IMGBB_API_KEY", "")
IMGBB_UPLOAD_URL = "https://api.imgbb.com/1/upload"
IMAGE_UPLOAD_CONCURRENCY = int(os.getenv("IMAGE_UPLOAD_CONCURRENCY", "3"))

HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "30"))

DB_PATH = Path(
    os.getenv(
        "PHOTOLISTER_DB_PATH",
        str(Path(__file__).resolve().parent.parent.parent / "data" / "photolister.db"),
    )
)


def api_base_url() -> str:
    if EBAY_SANDBOX_MODE:
        return "https://api.sandbox.ebay.com"
    return "https://api.ebay.com"


def auth_base_url() -> str:
    if EBAY_SANDBOX_MODE:
        return "https://auth.sandbox.ebay.com/oauth2/authorize"
    return "https://auth.ebay.com/oauth2/authorize"


def ebay_configured() -> bool:
    return bool(EBAY_APP_ID) and EBAY_APP_ID != "your-ebay-app-id"


def openai_configured() -> bool:
    return bool(OPENAI_API_KEY) and OPENAI_API_KEY != "sk-your-openai-key-here"


def imgbb_configured() -> bool:
    return bool(IMGBB_API_KEY)
