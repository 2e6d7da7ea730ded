"""Configuration models for honest brokers and the broker registry."""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .sandbox import validate_script


BROKER_NAME_PATTERN = r"^[a-z0-9][a-z0-9_-]{0,63}$"


class BrokerType(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class NamingScheme(str, Enum):
    ADJECTIVE_ANIMAL = "adjective_animal"
    COLOR_ANIMAL = "color_animal"
    NATO_PHONETIC = "nato_phonetic"
    SEQUENTIAL = "sequential"
    HASH = "hash"
    SCRIPT = "script"


class IdType(str, Enum):
    PATIENT_ID = "patient_id"
    PATIENT_NAME = "patient_name"
    ACCESSION = "accession"
    SESSION_ID = "session_id"


DATE_SHIFT_ID_TYPE = "date_shift"
SURROGATE_ID_TYPES = tuple(id_type.value for id_type in IdType)

DEFAULT_PREFIXES = {
    IdType.PATIENT_ID.value: "SUBJ",
    IdType.PATIENT_NAME.value: "NAME",
    IdType.ACCESSION.value: "ACC",
    IdType.SESSION_ID.value: "SESS",
}
FALLBACK_PREFIX = "ID"


class RequestEncoding(str, Enum):
    JSON = "json"
    FORM = "form"


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"


class CachePolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    ttl_seconds: float = Field(3600, gt=0)
    max_size: int = Field(10000, ge=1)


class DateShiftPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    min_days: int = -365
    max_days: int = 365

    @model_validator(mode="after")
    def validate_range(self) -> "DateShiftPolicy":
        if self.min_days > self.max_days:
            raise ValueError("date shift min_days must not exceed max_days")
        return self


def _default_auth_fields() -> dict[str, str]:
    return {
        "UserName": "username",
        "AppName": "app_name",
        "AppKey": "app_key",
        "Password": "password",
    }


CREDENTIAL_ATTRIBUTES = frozenset({"username", "password", "app_name", "app_key"})


class RemoteConnection(BaseModel):
    """Connection parameters for a remote (STS + lookup API) broker.

    Field casing and request encoding differ between deployments, so both are
    configuration rather than code.
    """

    model_config = ConfigDict(frozen=True)

    api_host: str = Field(..., min_length=1)
    sts_host: str = Field(..., min_length=1)
    scheme: str = "https"
    app_name: str = ""
    app_key: str = ""
    username: str = ""
    password: SecretStr = SecretStr("")
    timeout_seconds: float = Field(30, gt=0)

    token_path: str = "/token"
    auth_encoding: RequestEncoding = RequestEncoding.JSON
    auth_fields: dict[str, str] = Field(default_factory=_default_auth_fields)
    token_field: str = "access_token"
    expires_in_field: str = "expires_in"
    token_ttl_seconds: int = Field(3000, ge=1)

    lookup_path: str = "/DeIdentification/lookup"
    lookup_method: HttpMethod = HttpMethod.POST
    lookup_encoding: RequestEncoding = RequestEncoding.JSON
    id_in_field: str = "idIn"
    id_type_field: str = "idType"
    id_out_field: str = "idOut"

    max_retries: int = Field(3, ge=0, le=10)
    backoff_seconds: float = Field(0.5, ge=0)
    max_backoff_seconds: float = Field(5.0, ge=0)

    @field_validator("scheme")
    @classmethod
    def validate_scheme(cls, value: str) -> str:
        value = value.lower()
        if value not in {"http", "https"}:
            raise ValueError("scheme must be 'http' or 'https'")
        return value

    @field_validator("auth_fields")
    @classmethod
    def validate_auth_fields(cls, value: dict[str, str]) -> dict[str, str]:
        unknown = sorted(set(value.values()) - CREDENTIAL_ATTRIBUTES)
        if unknown:
            raise ValueError(f"auth_fields reference unknown credentials: {', '.join(unknown)}")
        return value

    def credential(self, attribute: str) -> str:
        if attribute == "password":
            return self.password.get_secret_value()
        return getattr(self, attribute)

    def url(self, host: str, path: str) -> str:
        return f"{self.scheme}://{host.rstrip('/')}/{path.lstrip('/')}"


class BrokerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., pattern=BROKER_NAME_PATTERN)
    description: str = ""
    enabled: bool = True
    broker_type: BrokerType = BrokerType.LOCAL
    naming_scheme: NamingScheme = NamingScheme.ADJECTIVE_ANIMAL
    patient_id_prefix: str = ""
    patient_name_prefix: str = ""
    replace_patient_id: bool = True
    replace_patient_name: bool = True
    lookup_script: Optional[str] = None
    hash_digest_size: int = Field(4, ge=2, le=16)
    cache: CachePolicy = Field(default_factory=CachePolicy)
    date_shift: DateShiftPolicy = Field(default_factory=DateShiftPolicy)
    hash_uids_enabled: bool = False
    remote: Optional[RemoteConnection] = None

    @model_validator(mode="after")
    def validate_type_payload(self) -> "BrokerConfig":
        if self.broker_type == BrokerType.REMOTE:
            if self.remote is None:
                raise ValueError("remote brokers require a 'remote' connection block")
        elif self.naming_scheme == NamingScheme.SCRIPT:
            if not self.lookup_script:
                raise ValueError("script naming scheme requires 'lookup_script'")
            try:
                validate_script(self.lookup_script)
            except ConfigurationError as exc:
                raise ValueError(str(exc)) from exc
        return self

    @property
    def is_remote(self) -> bool:
        return self.broker_type == BrokerType.REMOTE

    def prefix_for(self, id_type: str) -> str:
        if id_type == IdType.PATIENT_ID.value and self.patient_id_prefix:
            return self.patient_id_prefix
        if id_type == IdType.PATIENT_NAME.value and self.patient_name_prefix:
            return self.patient_name_prefix
        return DEFAULT_PREFIXES.get(id_type, FALLBACK_PREFIX)

    def replaces(self, id_type: str) -> bool:
        if id_type == IdType.PATIENT_ID.value:
            return self.replace_patient_id
        if id_type == IdType.PATIENT_NAME.value:
            return self.replace_patient_name
        return True

    def public_dict(self) -> dict:
        """Serialisable view with the remote password masked."""

        data = self.model_dump(mode="json")
        if data.get("remote"):
            data["remote"]["password"] = "********" if self.remote and self.remote.password.get_secret_value() else ""
        return data


class RegistryConfig(BaseModel):
    """Immutable, versioned set of broker configurations.

    The registry never edits one in place; every administrative change produces
    a new instance with ``version + 1`` that is swapped in atomically.
    """

    model_config = ConfigDict(frozen=True)

    version: int = Field(1, ge=1)
    brokers: tuple[BrokerConfig, ...] = ()

    @model_validator(mode="after")
    def ensure_unique_names(self) -> "RegistryConfig":
        seen: set[str] = set()
        for broker in self.brokers:
            if broker.name in seen:
                raise ValueError(f"duplicate broker name '{broker.name}'")
            seen.add(broker.name)
        return self

    def get(self, name: str) -> Optional[BrokerConfig]:
        return next((broker for broker in self.brokers if broker.name == name), None)

    def names(self) -> list[str]:
        return [broker.name for broker in self.brokers]

    def with_broker(self, broker: BrokerConfig) -> "RegistryConfig":
        others = tuple(existing for existing in self.brokers if existing.name != broker.name)
        return RegistryConfig(version=self.version + 1, brokers=others + (broker,))

    def without_broker(self, name: str) -> "RegistryConfig":
        return RegistryConfig(
            version=self.version + 1,
            brokers=tuple(existing for existing in self.brokers if existing.name != name),
        )


def parse_broker_config(data: dict) -> BrokerConfig:
    try:
        return BrokerConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid broker configuration: {exc}") from exc


def load_registry_config(path: Path) -> RegistryConfig:
    """Load broker configuration from a JSON or YAML file; a missing file yields an empty registry."""

    if not path.exists():
        return RegistryConfig()
    text = path.read_text()
    if path.suffix.lower() in {".yaml", ".yml"}:
        import yaml  # type: ignore

        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text) if text.strip() else {}
    try:
        return RegistryConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid broker configuration file {path}: {exc}") from exc


def save_registry_config(config: RegistryConfig, path: Path) -> None:
    data = config.model_dump(mode="json")
    for broker, raw in zip(config.brokers, data["brokers"]):
        if broker.remote is not None:
            raw["remote"]["password"] = broker.remote.password.get_secret_value()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    if path.suffix.lower() in {".yaml", ".yml"}:
        import yaml  # type: ignore

        tmp_path.write_text(yaml.safe_dump(data, sort_keys=False))
    else:
        tmp_path.write_text(json.dumps(data, indent=2))
    tmp_path.replace(path)
