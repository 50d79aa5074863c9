"""Cluster variables.

Variables are resolved once, before any play runs, from (lowest precedence
first) a YAML vars file, ``KUBEPROV_VAR_<NAME>`` environment variables and
explicit overrides. The result is an immutable mapping handed to every play;
plays may layer their own ``vars`` on top, which yields a new mapping.
"""
import ipaddress
import logging
import os
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..config import Config
from ..logging import redact_sensitive_data
from .errors import ConfigurationError

logger = logging.getLogger("kubeprov.variables")

FLANNEL_MANIFEST = "https://raw.githubusercontent.com/coreos/flannel/master/Documentation/kube-flannel.yml"


class ClusterVars(BaseModel):
    """Variables the provisioning pipeline cannot run without."""
    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    advertise_address: str = Field(
        validation_alias=AliasChoices("advertise_address", "ad_addr"),
        description="Address the API server advertises to the cluster",
    )
    pod_network_cidr: str = Field(
        validation_alias=AliasChoices("pod_network_cidr", "cidr_v"),
        description="Pod network address range passed to kubeadm init",
    )
    token_file: str = Field(
        description="Local path where the kubeadm init output is stored",
    )
    network_addon_manifest: str = Field(
        default=FLANNEL_MANIFEST,
        description="Manifest applied to the control plane after init",
    )
    api_server_port: int = 6443

    @field_validator("advertise_address")
    @classmethod
    def check_address(cls, v: str) -> str:
        try:
            ipaddress.ip_address(v)
        except ValueError as e:
            raise ValueError(f"not a valid IP address: {v}") from e
        return v

    @field_validator("pod_network_cidr")
    @classmethod
    def check_cidr(cls, v: str) -> str:
        try:
            ipaddress.ip_network(v, strict=False)
        except ValueError as e:
            raise ValueError(f"not a valid CIDR: {v}") from e
        return v

    @field_validator("token_file")
    @classmethod
    def expand_token_file(cls, v: str) -> str:
        return os.path.expanduser(v)


class Variables(Mapping):
    """Read-only variable mapping."""

    def __init__(self, data: Optional[Mapping[str, Any]] = None):
        self._data = MappingProxyType(dict(data or {}))

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Variables({redact_sensitive_data(dict(self._data))})"

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "Variables":
        """Return a new mapping with ``overrides`` layered on top."""
        if not overrides:
            return self
        merged = dict(self._data)
        merged.update(overrides)
        return Variables(merged)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, str]:
    prefix = Config.VAR_ENV_PREFIX
    return {
        key[len(prefix):].lower(): value
        for key, value in environ.items()
        if key.startswith(prefix) and len(key) > len(prefix)
    }


def _format_validation_error(error: ValidationError) -> str:
    missing = []
    invalid = []
    for item in error.errors():
        name = ".".join(str(loc) for loc in item["loc"])
        if item["type"] == "missing":
            missing.append(name)
        else:
            invalid.append(f"{name}: {item['msg']}")
    parts = []
    if missing:
        parts.append(f"Missing required variables: {', '.join(missing)}")
    if invalid:
        parts.append(f"Invalid variables: {'; '.join(invalid)}")
    return ". ".join(parts)


def build_variables(data: Mapping[str, Any]) -> Variables:
    """Validate raw variable data and freeze it.

    Raises:
        ConfigurationError: If a required variable is missing or invalid
    """
    try:
        cluster_vars = ClusterVars.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(e)) from e
    return Variables(cluster_vars.model_dump())


def load_variables(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Variables:
    """Load and validate cluster variables.

    Args:
        path: Optional YAML vars file (the ``env_variables`` file)
        overrides: Explicit values, highest precedence
        environ: Environment to read ``KUBEPROV_VAR_*`` from (default: os.environ)

    Returns:
        Immutable Variables
    """
    data: Dict[str, Any] = {}
    if path:
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Variables file not found: {path}")
        with open(path, "r") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Invalid variables file {path}: expected a mapping")
        data.update(loaded)

    data.update(_env_overrides(os.environ if environ is None else environ))
    data.update(overrides or {})

    variables = build_variables(data)
    logger.debug(f"Resolved variables: {variables!r}")
    return variables
