#!/usr/bin/env python
# coding: utf-8

"""
Pipeline configuration manager for epigenome-wide association studies.

Provides a validated parameter model for every tunable option of
:func:`ewaskit.core.pipeline.ewas` and a thread-safe singleton that layers
user configuration files (JSON, YAML, TOML) over the packaged defaults.
"""

import json
import math
import os
import tempfile
from contextlib import contextmanager
from copy import deepcopy
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Optional, Union

import toml
import yaml
from pydantic import BaseModel, Field, validator

from ewaskit.utils.logger import logger

DEFAULTS_FILE = Path(__file__).with_name("defaults.json")

# read as min(available sites, 50000) by the pipeline
DEFAULT_MOST_VARIABLE = 50000


def _is_disabled(value: Any) -> bool:
    """``None``, ``NaN`` and the strings ``"NA"``/``"none"`` switch a step off."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in {"na", "nan", "none", ""}
    try:
        return math.isnan(float(value))
    except (TypeError, ValueError):
        return False


class EwasParameters(BaseModel):
    """Validated options of a single EWAS invocation."""

    isva: bool = True
    sva: bool = True
    smartsva: bool = False
    n_sv: Optional[int] = Field(None, ge=1, description="Number of surrogates")
    isva0: bool = False
    isva1: bool = False
    winsorize_pct: Optional[float] = 0.05
    robust: bool = True
    rlm: bool = False
    outlier_iqr_factor: Optional[float] = None
    most_variable: Optional[int] = DEFAULT_MOST_VARIABLE
    random_seed: int = 20161123
    lmfit_safer: bool = False
    n_partitions: int = Field(8, ge=1)
    n_jobs: int = 1
    verbose: bool = False

    class Config:
        extra = "forbid"

    @validator("isva0", "isva1")
    def reject_deprecated(cls, v) -> bool:
        if v:
            raise ValueError(
                "isva0 and isva1 are deprecated and superseded by isva and sva"
            )
        return v

    @validator("winsorize_pct", pre=True)
    def validate_winsorize_pct(cls, v) -> Optional[float]:
        if _is_disabled(v):
            return None
        v = float(v)
        if not 0.0 < v < 0.5:
            raise ValueError("winsorize_pct must lie in (0, 0.5)")
        return v

    @validator("outlier_iqr_factor", pre=True)
    def validate_outlier_iqr_factor(cls, v) -> Optional[float]:
        if _is_disabled(v):
            return None
        v = float(v)
        if v <= 0:
            raise ValueError("outlier_iqr_factor must be positive")
        return v

    @validator("most_variable", pre=True)
    def validate_most_variable(cls, v) -> Optional[int]:
        if _is_disabled(v):
            return None
        if int(v) <= 1:
            raise ValueError("most_variable must be greater than 1")
        return int(v)

    @validator("n_jobs")
    def validate_n_jobs(cls, v) -> int:
        if v == 0:
            raise ValueError("n_jobs must be a positive integer or negative (joblib)")
        return v


def _parameters_dict(params: EwasParameters) -> Dict[str, Any]:
    dump = getattr(params, "model_dump", None)
    return dump() if dump is not None else params.dict()


def _atomic_write(path: Union[str, Path], content: Union[str, bytes]) -> None:
    """
    Write ``content`` to ``path`` atomically through a temporary sibling file.

    Raises
    ------
    OSError
        If the write or the final rename fails.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    content_bytes = content.encode("utf-8") if isinstance(content, str) else content

    tmp_file = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb", dir=str(path.parent), delete=False
        ) as tmp:
            tmp_file = Path(tmp.name)
            tmp.write(content_bytes)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(str(tmp_file), str(path))
        logger.debug(f"Successfully wrote file: {path}")
    except Exception as e:
        logger.error(f"Failed to write file {path}: {e}")
        if tmp_file is not None and tmp_file.exists():
            tmp_file.unlink()
        raise


def _deep_update(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``updates`` into ``base`` (modified in place)."""
    for key, value in updates.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _load_by_format(path: Path) -> Dict[str, Any]:
    ext = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if ext == ".json":
        loaded = json.loads(text)
    elif ext in (".yml", ".yaml"):
        loaded = yaml.safe_load(text)
    elif ext == ".toml":
        loaded = toml.loads(text)
    else:
        raise ValueError(f"Unsupported configuration file extension: {ext}")
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Configuration must be a dictionary, got {type(loaded)}")
    # allow both a flat mapping and an ``[ewas]`` section
    return loaded.get("ewas", loaded)


class EwasConfig:
    """
    Thread-safe singleton holding the active :class:`EwasParameters`.

    The packaged ``defaults.json`` is read first; a user file passed at
    construction (or later via :meth:`load_file`) is deep-merged on top.
    """

    _instance: Optional["EwasConfig"] = None
    _lock = RLock()

    def __new__(cls, config_file: Optional[Union[str, Path]] = None):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
            return cls._instance

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        if getattr(self, "_initialized", False):
            return

        self._data_lock = RLock()
        self._cfg_path: Optional[Path] = None
        self._raw: Dict[str, Any] = {}
        self.parameters = EwasParameters()

        if DEFAULTS_FILE.exists():
            self._raw = _load_by_format(DEFAULTS_FILE)
            logger.debug(f"Loaded default parameters from {DEFAULTS_FILE}")
        else:
            logger.warning(f"{DEFAULTS_FILE} not found; using built-in defaults")

        if config_file is not None:
            self.load_file(config_file)

        self._validate_and_set(self._raw)
        self._initialized = True

    def _validate_and_set(self, raw: Dict[str, Any]) -> None:
        self.parameters = EwasParameters(**raw)
        self._raw = raw

    @contextmanager
    def _transaction(self):
        """Restore the previous state if anything inside the block fails."""
        with self._data_lock:
            backup_raw = deepcopy(self._raw)
            backup_params = self.parameters
            try:
                yield
            except Exception:
                self._raw = backup_raw
                self.parameters = backup_params
                raise

    def load_file(self, path: Union[str, Path]) -> None:
        """
        Merge parameters from a JSON, YAML or TOML file.

        Raises
        ------
        FileNotFoundError
            If the file does not exist.
        ValueError
            On unsupported formats or invalid parameter values.
        """
        path = Path(path).resolve()
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        loaded = _load_by_format(path)
        with self._transaction():
            merged = deepcopy(self._raw)
            _deep_update(merged, loaded)
            self._validate_and_set(merged)
            self._cfg_path = path
        logger.info(f"Loaded EWAS configuration from {path}")

    def save_file(self, path: Union[str, Path], fmt: Optional[str] = None) -> None:
        """Write the active parameters to ``path`` (format from ``fmt`` or suffix)."""
        path = Path(path)
        fmt = (fmt or path.suffix.lstrip(".") or "json").lower()
        data = self.to_dict()
        if fmt == "json":
            content = json.dumps(data, indent=2)
        elif fmt in ("yml", "yaml"):
            content = yaml.safe_dump(data, sort_keys=False)
        elif fmt == "toml":
            # no null in TOML; "NA" keeps a disabled step disabled on reload
            defaults = _parameters_dict(EwasParameters())
            content = toml.dumps(
                {
                    k: "NA" if v is None else v
                    for k, v in data.items()
                    if v is not None or defaults[k] is not None
                }
            )
        else:
            raise ValueError(f"Unsupported configuration format: {fmt}")
        _atomic_write(path, content)

    def update(self, **overrides: Any) -> None:
        """Validate and apply parameter overrides to the active configuration."""
        with self._transaction():
            merged = deepcopy(self._raw)
            merged.update(overrides)
            self._validate_and_set(merged)

    def to_dict(self) -> Dict[str, Any]:
        with self._data_lock:
            return _parameters_dict(self.parameters)


_global_config: Optional[EwasConfig] = None


def get_config() -> EwasConfig:
    """Return the global :class:`EwasConfig`, creating it on first use."""
    global _global_config
    if _global_config is None:
        _global_config = EwasConfig()
    return _global_config


def reset_config() -> None:
    """Drop the global configuration (primarily for testing)."""
    global _global_config
    with EwasConfig._lock:
        EwasConfig._instance = None
        _global_config = None
    logger.debug("Global configuration reset")


def load_file(path: Union[str, Path]) -> None:
    """Load configuration from a file. See :meth:`EwasConfig.load_file`."""
    get_config().load_file(path)


def save_file(path: Union[str, Path], fmt: Optional[str] = None) -> None:
    """Save configuration to a file. See :meth:`EwasConfig.save_file`."""
    get_config().save_file(path, fmt=fmt)


def resolve_parameters(
    parameters: Optional[EwasParameters] = None, **overrides: Any
) -> EwasParameters:
    """
    Combine a base parameter set with keyword overrides.

    Parameters
    ----------
    parameters : EwasParameters, optional
        Base parameters; the active global configuration when omitted.
    **overrides
        Individual options (``winsorize_pct=None``, ``sva=False``, ...).

    Returns
    -------
    EwasParameters
        Freshly validated parameters.

    Raises
    ------
    ValueError
        If an option is unknown or out of range.
    """
    base = parameters if parameters is not None else get_config().parameters
    merged = _parameters_dict(base)
    merged.update(overrides)
    return EwasParameters(**merged)
