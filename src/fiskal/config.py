from __future__ import annotations

import os
from pathlib import Path
from zoneinfo import ZoneInfo

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "fiskal"

KEYRING_SERVICE = "fiskal"
KEYRING_CERT_PASSWORD = "cert-password"
KEYRING_ERACUN_PASSWORD = "eracun-password"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Locate the config dir before .env is loaded, so .env itself can live there.

    Only the shell env var and the dev layout are trusted at this point; the
    platformdirs location is used only when it already exists.
    """
    from_env = os.environ.get("FISKAL_CONFIG_DIR")
    if from_env:
        return Path(from_env)
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / "config"
    if candidate.is_dir():
        return candidate
    pd = Path(platformdirs.user_config_dir(APP_NAME))
    if pd.is_dir():
        return pd
    return None


# cwd .env wins; the config-dir .env only fills gaps
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default."""
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # src/fiskal/config.py -> project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    return _resolve_dir("FISKAL_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    return _resolve_dir("FISKAL_DATA_DIR", "data", kind="data")


def get_archive_dir(method: str) -> Path:
    """Directory holding request/response documents for one protocol."""
    return get_data_dir() / "archive" / method


ZAGREB = ZoneInfo("Europe/Zagreb")

FINA_NS = "http://www.apis-it.hr/fin/2012/types/f73"
SOAP_NS = "http://schemas.xmlsoap.org/soap/envelope/"

UBL_INVOICE_NS = "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"
UBL_CAC_NS = "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"
UBL_CBC_NS = "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"

ENDPOINTS = {
    "test": {
        "fina": "https://cistest.apis-it.hr:8449/FiskalizacijaServiceTest",
        "eracun": "https://demo.moj-eracun.hr/apis/v2",
    },
    "production": {
        "fina": "https://cis.porezna-uprava.hr:8449/FiskalizacijaService",
        "eracun": "https://api.moj-eracun.hr/apis/v2",
    },
}

CIS_TIMEOUT = 30
ERACUN_TIMEOUT = 60


# --- Keyring helpers ---


def _get_keyring_password(username: str) -> str | None:
    """Read a secret from the OS keyring; None on any backend failure."""
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, username)
    except Exception:
        return None


def _set_keyring_password(username: str, password: str) -> bool:
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, username, password)
        return True
    except Exception:
        return False


def _delete_keyring_password(username: str) -> bool:
    try:
        import keyring

        keyring.delete_password(KEYRING_SERVICE, username)
        return True
    except Exception:
        return False


# --- Secrets ---


def _secret(env_var: str, keyring_user: str) -> str | None:
    value = os.environ.get(env_var)
    if value is not None:
        return value
    return _get_keyring_password(keyring_user)


def get_cert_password() -> str | None:
    """Certificate password: FISKAL_CERT_PASSWORD, then the OS keyring."""
    return _secret("FISKAL_CERT_PASSWORD", KEYRING_CERT_PASSWORD)


def get_eracun_password() -> str | None:
    """moj-eRačun password: FISKAL_ERACUN_PASSWORD, then the OS keyring."""
    return _secret("FISKAL_ERACUN_PASSWORD", KEYRING_ERACUN_PASSWORD)


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    return yaml.safe_load(path.read_text()) or {}


def load_issuer(slug: str = "default") -> dict:
    """Load an issuer profile from config/issuers/{slug}.yaml.

    Passwords missing from the file are filled from the environment or keyring.
    """
    data = load_yaml(get_config_dir() / "issuers" / f"{slug}.yaml")
    fina = data.setdefault("fina", {})
    if not fina.get("cert_path"):
        fina["cert_path"] = os.environ.get("FISKAL_CERT_PATH")
    if not fina.get("cert_password"):
        fina["cert_password"] = get_cert_password()
    eracun = data.setdefault("eracun", {})
    if not eracun.get("password"):
        eracun["password"] = get_eracun_password()
    return data


def list_issuers() -> list[str]:
    """Return sorted issuer slugs (YAML file stems) from config/issuers/."""
    issuers_dir = get_config_dir() / "issuers"
    if not issuers_dir.exists():
        return []
    return sorted(f.stem for f in issuers_dir.glob("*.yaml"))


def save_issuer(slug: str, data: dict) -> Path:
    """Write config/issuers/{slug}.yaml atomically."""
    issuers_dir = get_config_dir() / "issuers"
    issuers_dir.mkdir(parents=True, exist_ok=True)
    path = issuers_dir / f"{slug}.yaml"
    tmp = path.with_suffix(".tmp")
    tmp.write_text(yaml.dump(data, default_flow_style=False, allow_unicode=True))
    os.replace(tmp, path)
    return path
