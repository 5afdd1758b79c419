from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..models.config_models import FieldMapping, FieldType, MatchingSettings, StaticContext, UploadSettings

"""Config loader.

Responsibilities:
- Load YAML config/upload.yml
- Validate it against config_schema.json (shipped next to this module)
- Apply defaults for the optional sections
- Resolve credentials and the endpoint override from the environment
  (.env is loaded by the CLI before this runs)
"""

SCHEMA_PATH = Path(__file__).with_name("config_schema.json")

DEFAULT_CONFIG_PATH = Path("config/upload.yml")
DEFAULT_OUTPUT_DIRECTORY = "output"

ENV_ENDPOINT_URL = "DHIMS_ENDPOINT_URL"
ENV_SESSION_ID = "DHIMS_SESSION_ID"
ENV_USERNAME = "DHIMS_USERNAME"
ENV_PASSWORD = "DHIMS_PASSWORD"


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class Credentials:
    session_id: str | None = None  # JSESSIONID cookie
    username: str | None = None
    password: str | None = None

    @property
    def basic_auth(self) -> tuple[str, str] | None:
        if self.username and self.password is not None:
            return (self.username, self.password)
        return None

    @property
    def is_empty(self) -> bool:
        return not self.session_id and self.basic_auth is None


@dataclass(frozen=True)
class UploadConfig:
    context: StaticContext
    field_mappings: tuple[FieldMapping, ...]
    upload: UploadSettings
    matching: MatchingSettings
    duplicate_field: str
    source_file: str | None
    source_sheet: str | None
    null_sentinels: tuple[str, ...]
    output_directory: str
    credentials: Credentials


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the JSON schema.

    Raises:
        ConfigError: schema file missing / not valid JSON, or the config
            violates the schema (missing keys, wrong types, unknown keys)
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")

    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def _build_mappings(raw: dict[str, Any]) -> tuple[FieldMapping, ...]:
    mappings = []
    for name, spec in raw.items():
        options = spec.get("options")
        mappings.append(
            FieldMapping(
                name=name,
                source_column=spec["column"],
                remote_field_id=spec["data_element"],
                type=FieldType.parse(spec.get("type", "text")),
                required=bool(spec.get("required", False)),
                options=tuple(options) if options is not None else None,
                normalizer=spec.get("normalizer"),
            )
        )
    return tuple(mappings)


def load_credentials(env: Mapping[str, str] | None = None) -> Credentials:
    env = os.environ if env is None else env
    return Credentials(
        session_id=env.get(ENV_SESSION_ID) or None,
        username=env.get(ENV_USERNAME) or None,
        password=env.get(ENV_PASSWORD),
    )


def load_config(path: Path, env: Mapping[str, str] | None = None) -> UploadConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("config validation failed: top level must be a mapping")

    _validate_config_schema(data)

    env = os.environ if env is None else env
    endpoint = data["endpoint"]
    ctx = data["context"]
    up = data.get("upload", {})
    match = data.get("matching", {})
    source = data.get("source", {})

    # 環境変数 (.env 含む) が設定ファイルより優先
    url = env.get(ENV_ENDPOINT_URL) or endpoint["url"]

    context = StaticContext(
        program=ctx["program"],
        org_unit=ctx["org_unit"],
        program_stage=ctx["program_stage"],
        endpoint_url=url,
        status=ctx.get("status", "COMPLETED"),
        headers=dict(endpoint.get("headers", {})) or None,
        wrap_in_collection=endpoint.get("wrap_in_collection"),
        event_date_field=ctx.get("event_date_field", "dateOfAdmission"),
    )
    mappings = _build_mappings(data["field_mappings"])
    if context.event_date_field not in {m.name for m in mappings}:
        raise ConfigError(
            f"config validation failed: event_date_field '{context.event_date_field}' is not a mapped field"
        )

    upload = UploadSettings(
        retry_attempts=up.get("retry_attempts", 3),
        retry_base_delay=float(up.get("retry_base_delay", 1.0)),
        rate_limit_seconds=float(up.get("rate_limit_seconds", 0.5)),
        request_timeout=float(endpoint.get("timeout_seconds", 30.0)),
        job_poll_attempts=up.get("job_poll_attempts", 10),
        job_poll_interval=float(up.get("job_poll_interval", 1.0)),
        verify_first_record=up.get("verify_first_record", True),
    )
    matching = MatchingSettings(
        diagnosis_codes=match.get("diagnosis_codes"),
        auto_accept_suggestions=match.get("auto_accept_suggestions", True),
        auto_accept_threshold=float(match.get("threshold", 0.70)),
    )
    return UploadConfig(
        context=context,
        field_mappings=mappings,
        upload=upload,
        matching=matching,
        duplicate_field=data.get("validation", {}).get("duplicate_field", "patientNumber"),
        source_file=source.get("file"),
        source_sheet=source.get("sheet"),
        null_sentinels=tuple(source.get("null_sentinels", ["NULL"])),
        output_directory=data.get("output_directory", DEFAULT_OUTPUT_DIRECTORY),
        credentials=load_credentials(env),
    )
