from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping

from .errors import ConfigError


DEFAULT_RAW_EXTENSIONS = "dng,raf,cr2,cr3,nef,arw,orf,rw2"
DEFAULT_JPG_EXTENSIONS = "jpg,jpeg,heic,heif"
DEFAULT_EXCLUDE_PATTERNS = ".DS_Store,Thumbs.db,.thumbnails"
DEFAULT_STORAGE_CLASS = "DEEP_ARCHIVE"

STORAGE_CLASSES = {
    "STANDARD",
    "STANDARD_IA",
    "ONEZONE_IA",
    "INTELLIGENT_TIERING",
    "GLACIER",
    "GLACIER_IR",
    "DEEP_ARCHIVE",
    "REDUCED_REDUNDANCY",
}


def _expand(p: str) -> Path:
    return Path(os.path.expanduser(p)).resolve()


def _split_csv(s: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in s.split(",") if p.strip())


def _split_extensions(s: str) -> frozenset[str]:
    return frozenset(p.lower().lstrip(".") for p in _split_csv(s))


def _split_paths(s: str) -> list[Path]:
    return [Path(p).resolve() for p in _split_csv(s)]


def _check_storage_class(value: str) -> str:
    storage_class = value.strip().upper()
    if storage_class not in STORAGE_CLASSES:
        raise ConfigError(
            f"Unknown S3 storage class: {storage_class}\n"
            f"  Expected one of: {', '.join(sorted(STORAGE_CLASSES))}"
        )
    return storage_class


def config_dir() -> Path:
    return _expand(os.environ.get("PHOTO_BACKUP_CONFIG_DIR", "~/.photo-backup-config"))


def config_file_path() -> Path:
    return config_dir() / "config"


@dataclass(frozen=True)
class Config:
    s3_bucket: str
    s3_prefix_raw: str = "raw"
    s3_prefix_jpg: str = "jpg"

    raw_extensions: frozenset[str] = _split_extensions(DEFAULT_RAW_EXTENSIONS)
    jpg_extensions: frozenset[str] = _split_extensions(DEFAULT_JPG_EXTENSIONS)
    exclude_patterns: tuple[str, ...] = _split_csv(DEFAULT_EXCLUDE_PATTERNS)

    local_import_base: Path = _expand("~/Desktop")

    aws_profile: str = "default"
    aws_region: str = "ap-northeast-1"
    s3_storage_class: str = DEFAULT_STORAGE_CLASS

    @property
    def importable_extensions(self) -> frozenset[str]:
        return self.raw_extensions | self.jpg_extensions

    @classmethod
    def from_values(cls, values: Mapping[str, str]) -> "Config":
        """Build a Config from KEY=value pairs as stored in the config file."""
        storage_class = _check_storage_class(values.get("S3_STORAGE_CLASS") or DEFAULT_STORAGE_CLASS)
        return cls(
            s3_bucket=(values.get("S3_BUCKET") or "").strip(),
            s3_prefix_raw=(values.get("S3_PREFIX_RAW") or "raw").strip("/ "),
            s3_prefix_jpg=(values.get("S3_PREFIX_JPG") or "jpg").strip("/ "),
            raw_extensions=_split_extensions(values.get("RAW_EXTENSIONS") or DEFAULT_RAW_EXTENSIONS),
            jpg_extensions=_split_extensions(values.get("JPG_EXTENSIONS") or DEFAULT_JPG_EXTENSIONS),
            exclude_patterns=_split_csv(values.get("EXCLUDE_PATTERNS", DEFAULT_EXCLUDE_PATTERNS)),
            local_import_base=_expand(values.get("LOCAL_IMPORT_BASE") or "~/Desktop"),
            aws_profile=(values.get("AWS_PROFILE") or "default").strip(),
            aws_region=(values.get("AWS_REGION") or "ap-northeast-1").strip(),
            s3_storage_class=storage_class,
        )

    def to_values(self) -> dict[str, str]:
        return {
            "S3_BUCKET": self.s3_bucket,
            "S3_PREFIX_RAW": self.s3_prefix_raw,
            "S3_PREFIX_JPG": self.s3_prefix_jpg,
            "RAW_EXTENSIONS": ",".join(sorted(self.raw_extensions)),
            "JPG_EXTENSIONS": ",".join(sorted(self.jpg_extensions)),
            "EXCLUDE_PATTERNS": ",".join(self.exclude_patterns),
            "LOCAL_IMPORT_BASE": str(self.local_import_base),
            "AWS_PROFILE": self.aws_profile,
            "AWS_REGION": self.aws_region,
            "S3_STORAGE_CLASS": self.s3_storage_class,
        }

    def public_view(self) -> dict[str, object]:
        # Shape returned by GET /config; extension and exclusion lists stay server-side.
        return {
            "configured": True,
            "S3_BUCKET": self.s3_bucket,
            "LOCAL_IMPORT_BASE": str(self.local_import_base),
            "S3_STORAGE_CLASS": self.s3_storage_class,
            "S3_PREFIX_RAW": self.s3_prefix_raw,
            "S3_PREFIX_JPG": self.s3_prefix_jpg,
            "AWS_REGION": self.aws_region,
        }


CONFIG_KEYS = frozenset(Config(s3_bucket="").to_values())
# Echoed back by the UI from GET /config; never persisted.
_VIEW_ONLY_KEYS = frozenset({"configured", "message"})


def read_config_file(path: Path) -> dict[str, str]:
    """
    Parse a KEY="value" file. Comments start with '#', blank lines are ignored,
    surrounding quotes are stripped.
    """
    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def render_config_file(cfg: Config) -> str:
    v = cfg.to_values()
    return (
        "# S3 bucket\n"
        f'S3_BUCKET="{v["S3_BUCKET"]}"\n'
        f'S3_PREFIX_RAW="{v["S3_PREFIX_RAW"]}"\n'
        f'S3_PREFIX_JPG="{v["S3_PREFIX_JPG"]}"\n'
        "\n"
        "# File extensions (comma separated)\n"
        f'RAW_EXTENSIONS="{v["RAW_EXTENSIONS"]}"\n'
        f'JPG_EXTENSIONS="{v["JPG_EXTENSIONS"]}"\n'
        "\n"
        "# Exclusion patterns (comma separated substrings of the file name)\n"
        f'EXCLUDE_PATTERNS="{v["EXCLUDE_PATTERNS"]}"\n'
        "\n"
        "# Local destination for SD card imports\n"
        f'LOCAL_IMPORT_BASE="{v["LOCAL_IMPORT_BASE"]}"\n'
        "\n"
        "# AWS\n"
        f'AWS_PROFILE="{v["AWS_PROFILE"]}"\n'
        f'AWS_REGION="{v["AWS_REGION"]}"\n'
        "\n"
        "# S3 storage class\n"
        f'S3_STORAGE_CLASS="{v["S3_STORAGE_CLASS"]}"\n'
    )


def save_config(cfg: Config, path: Path | None = None) -> Path:
    path = path or config_file_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(render_config_file(cfg), encoding="utf-8")
    tmp.replace(path)
    return path


def merge_config(current: Config | None, updates: Mapping[str, object]) -> Config:
    """
    Overlay `updates` (config-file keys, e.g. from POST /config) onto `current`.
    Unknown keys are rejected; None values leave the current value in place.
    """
    updates = {k: v for k, v in updates.items() if k not in _VIEW_ONLY_KEYS}
    unknown = sorted(set(updates) - CONFIG_KEYS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

    values = current.to_values() if current is not None else {}
    for key, value in updates.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            value = ",".join(str(v) for v in value)
        values[key] = str(value)
    return Config.from_values(values)


def try_load_config(path: Path | None = None) -> Config | None:
    """Config from disk (with env overrides), or None when nothing is configured yet."""
    path = path or config_file_path()
    if not path.is_file() or path.stat().st_size == 0:
        return None
    cfg = Config.from_values(read_config_file(path))
    env_bucket = os.environ.get("PHOTO_BACKUP_BUCKET", "").strip()
    if env_bucket:
        cfg = replace(cfg, s3_bucket=env_bucket)
    return cfg


def load_config(
    *,
    config_file: Path | None = None,
    s3_bucket: str | None = None,
    local_import_base: str | None = None,
    aws_profile: str | None = None,
    aws_region: str | None = None,
    s3_storage_class: str | None = None,
) -> Config:
    path = config_file or config_file_path()
    cfg = try_load_config(path)
    if cfg is None:
        raise ConfigError(
            f"Configuration file not found: {path}\n"
            f"  Run: photobackup backup --config"
        )

    overrides: dict[str, object] = {}
    if s3_bucket:
        overrides["s3_bucket"] = s3_bucket
    if local_import_base:
        overrides["local_import_base"] = _expand(local_import_base)
    if aws_profile:
        overrides["aws_profile"] = aws_profile
    if aws_region:
        overrides["aws_region"] = aws_region
    if s3_storage_class:
        overrides["s3_storage_class"] = _check_storage_class(s3_storage_class)
    if overrides:
        cfg = replace(cfg, **overrides)

    if not cfg.s3_bucket:
        raise ConfigError(
            "S3 bucket is not configured.\n"
            "  Run: photobackup backup --config (or set PHOTO_BACKUP_BUCKET)"
        )
    return cfg


@dataclass(frozen=True)
class ServerConfig:
    host: str
    port: int
    progress_dir: Path
    mount_roots: list[Path]
    retention_seconds: float


def load_server_config(
    *,
    host: str | None = None,
    port: int | None = None,
    progress_dir: str | None = None,
    mount_roots: str | None = None,
    retention_seconds: float | None = None,
) -> ServerConfig:
    env = os.environ

    host = host or env.get("PHOTO_BACKUP_HOST", "127.0.0.1")

    if port is None:
        port_env = (env.get("PHOTO_BACKUP_PORT") or env.get("PORT") or "").strip()
        try:
            port = int(port_env) if port_env else 3001
        except ValueError:
            port = 3001

    progress_dir = progress_dir or env.get("PHOTO_BACKUP_PROGRESS_DIR", str(config_dir() / "uploads"))

    mount_roots = mount_roots or env.get("PHOTO_BACKUP_MOUNT_ROOTS", "")
    if mount_roots.strip():
        mount_roots_list = _split_paths(mount_roots)
    else:
        mount_roots_list = [Path("/Volumes"), Path("/media"), Path("/run/media"), Path("/mnt")]

    retention_seconds = float(
        retention_seconds
        if retention_seconds is not None
        else env.get("PHOTO_BACKUP_JOB_RETENTION_SECONDS", "3600")
    )

    scfg = ServerConfig(
        host=host,
        port=int(port),
        progress_dir=_expand(progress_dir),
        mount_roots=mount_roots_list,
        retention_seconds=retention_seconds,
    )
    scfg.progress_dir.mkdir(parents=True, exist_ok=True)
    return scfg
