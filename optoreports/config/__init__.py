"""
OptoReports — Configuration & Constants
Environment variables, domain constants, and storage backend selection.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

# ============================================================
# PATHS
# ============================================================
BASE_DIR = Path(__file__).parent.parent.parent
DATA_DIR = BASE_DIR / "data"
REPORTS_DIR = Path(os.environ.get("REPORTS_DIR", str(DATA_DIR / "reports")))

# ============================================================
# STORAGE BACKEND
# ============================================================
REPORTS_TABLE = os.environ.get("REPORTS_TABLE", "reports")

# Accepted spellings for each backend kind
FS_BACKENDS = ("fs", "file", "files")
DOCSTORE_BACKENDS = ("pg", "postgres", "postgresql", "docstore")

# ============================================================
# FEATURE FLAGS
# ============================================================
DEBUG_API = os.environ.get("DEBUG_API", "false").lower() in ("1", "true")
CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]

# ============================================================
# SURVEY SHAPE
# ============================================================
KEY_COUNT = 84

# "Not applicable" tokens, compared case-insensitively
NA_TOKENS = ("-", "—", "na", "n/a", "nil")

# ============================================================
# FISCAL CALENDAR (April → March)
# ============================================================
FY_MONTHS = [
    "April", "May", "June", "July", "August", "September",
    "October", "November", "December", "January", "February", "March",
]
# Calendar months that belong to the fiscal year started the previous year
FY_TRAILING_MONTHS = ("January", "February", "March")

# Institutions starting with these prefixes are supervising doctor accounts,
# not reporting institutions
DOCTOR_ACCOUNT_PREFIXES = ("DC ", "DOC ")


# ============================================================
# STORAGE CONFIG
# ============================================================
@dataclass(frozen=True)
class StorageConfig:
    """Explicit backend selection, built once at startup and injected."""
    backend: str = "fs"
    reports_dir: Path = REPORTS_DIR
    database_url: Optional[str] = None
    table: str = REPORTS_TABLE

    @property
    def is_docstore(self) -> bool:
        return self.backend in DOCSTORE_BACKENDS


def load_storage_config(env: Optional[Mapping[str, str]] = None) -> StorageConfig:
    """Build a StorageConfig from environment variables (os.environ by default)."""
    env = os.environ if env is None else env
    backend = (env.get("REPORTS_BACKEND") or "fs").strip().lower()
    if backend not in FS_BACKENDS + DOCSTORE_BACKENDS:
        raise ValueError(f"Unknown REPORTS_BACKEND '{backend}'")
    if backend in FS_BACKENDS:
        backend = "fs"

    reports_dir = Path(env.get("REPORTS_DIR") or (DATA_DIR / "reports"))
    database_url = env.get("DATABASE_URL") or None
    if backend in DOCSTORE_BACKENDS and not database_url:
        database_url = "postgresql://localhost:5432/optometry"

    return StorageConfig(
        backend=backend,
        reports_dir=reports_dir,
        database_url=database_url,
        table=env.get("REPORTS_TABLE") or "reports",
    )


# ============================================================
# VERSION
# ============================================================
VERSION = "1.4.0"
