from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta, timezone
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "emissor-abrasf"
KEYRING_SERVICE = "emissor-abrasf"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Only checks sources available before .env is loaded (env var set in the
    shell, dev layout). Returns None if only platformdirs would resolve and
    the directory does not exist yet.
    """
    from_env = os.environ.get("EMISSOR_ABRASF_CONFIG_DIR")
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


# Load .env: cwd first (highest priority), then config dir (won't override)
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default.

    Priority: 1) env var, 2) dev repo layout, 3) platformdirs user directory.
    """
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # Development layout: src/emissor_abrasf/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("EMISSOR_ABRASF_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("EMISSOR_ABRASF_DATA_DIR", "data", kind="data")


ABRASF_NS = "http://www.abrasf.org.br/nfse.xsd"

BRT = timezone(timedelta(hours=-3))

ENV_ALIASES = {"staging": "homologacao", "production": "producao"}

ENDPOINTS = {
    "homologacao": "https://homologacao.nfse.salvador.ba.gov.br/nfse/GerarNfse",
    "producao": "https://nfse.salvador.ba.gov.br/nfse/GerarNfse",
}

DOCUMENT_URL_TEMPLATES = {
    "homologacao": "https://homologacao.sefaz.salvador.ba.gov.br/nfse/consulta/{numero}",
    "producao": "https://www.sefaz.salvador.ba.gov.br/nfse/consulta/{numero}",
}

DEFAULT_CODIGO_MUNICIPIO = "2927408"

SUBMIT_TIMEOUT = 60
STORE_LOCK_TIMEOUT = 10


def normalize_env(env: str) -> str:
    """Map ``staging``/``production`` to the environment names used internally."""
    env = ENV_ALIASES.get(env, env)
    if env not in ENDPOINTS:
        raise ValueError(f"Ambiente desconhecido: '{env}'")
    return env


# --- Keyring helpers ---


def _keyring_username(inscricao_municipal: str) -> str:
    return f"cert-pfx-password:{inscricao_municipal}"


def _get_keyring_password(inscricao_municipal: str) -> str | None:
    """Try to get the certificate password from the OS keyring.

    Returns None on any failure (no backend, not stored, dbus errors, etc.).
    """
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, _keyring_username(inscricao_municipal))
    except Exception:
        return None


def _set_keyring_password(inscricao_municipal: str, password: str) -> bool:
    """Store the certificate password in the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, _keyring_username(inscricao_municipal), password)
        return True
    except Exception:
        return False


def _delete_keyring_password(inscricao_municipal: str) -> bool:
    """Remove the certificate password from the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.delete_password(KEYRING_SERVICE, _keyring_username(inscricao_municipal))
        return True
    except Exception:
        return False


# --- Credential collaborator ---


@dataclass(frozen=True)
class Credential:
    """PFX signing credential for one issuer. The password never shows in repr."""

    pfx_path: str
    password: str = field(repr=False)


def _password_env_var(inscricao_municipal: str) -> str:
    return "CERT_PFX_PASSWORD_" + re.sub(r"\W", "_", inscricao_municipal).upper()


def get_cert_password(inscricao_municipal: str) -> str:
    """Return the certificate password for an issuer.

    Priority: 1) CERT_PFX_PASSWORD_<IM> env var, 2) CERT_PFX_PASSWORD env var,
    3) OS keyring. Raises KeyError if no source has the password.
    """
    for var in (_password_env_var(inscricao_municipal), "CERT_PFX_PASSWORD"):
        pwd = os.environ.get(var)
        if pwd is not None:
            return pwd
    pwd = _get_keyring_password(inscricao_municipal)
    if pwd is not None:
        return pwd
    raise KeyError("CERT_PFX_PASSWORD")


def load_credential(issuer) -> Credential:
    """Resolve the signing credential for *issuer* (an IssuerProfile).

    The certificate path comes from the profile, falling back to the
    CERT_PFX_PATH env var. Raises KeyError if either part is missing.
    """
    pfx_path = issuer.certificado or os.environ["CERT_PFX_PATH"]
    return Credential(pfx_path=pfx_path, password=get_cert_password(issuer.inscricao_municipal))


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    return yaml.safe_load(path.read_text())


def load_issuer(name: str) -> dict:
    """Load an issuer profile from config/issuers/{name}.yaml."""
    return load_yaml(get_config_dir() / "issuers" / f"{name}.yaml")


def list_issuers() -> list[str]:
    """Return sorted list of issuer names (YAML file stems) from config/issuers/."""
    issuers_dir = get_config_dir() / "issuers"
    if not issuers_dir.exists():
        return []
    return sorted(f.stem for f in issuers_dir.glob("*.yaml"))
