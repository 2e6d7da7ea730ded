import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from honest_broker.config import (
    BrokerConfig,
    RegistryConfig,
    RemoteConnection,
    load_registry_config,
    parse_broker_config,
    save_registry_config,
)
from honest_broker.errors import ConfigurationError

REMOTE = {"api_host": "hb.example.org", "sts_host": "sts.example.org", "username": "svc", "password": "hunter2"}


def test_defaults():
    broker = BrokerConfig(name="demo")

    assert broker.enabled is True
    assert broker.naming_scheme.value == "adjective_animal"
    assert broker.prefix_for("patient_id") == "SUBJ"
    assert broker.prefix_for("patient_name") == "NAME"
    assert broker.prefix_for("accession") == "ACC"
    assert broker.prefix_for("custom_type") == "ID"
    assert broker.cache.enabled is True
    assert broker.date_shift.enabled is False


def test_configured_prefixes_and_replace_flags():
    broker = BrokerConfig(name="demo", patient_id_prefix="P", patient_name_prefix="N", replace_patient_name=False)

    assert broker.prefix_for("patient_id") == "P"
    assert broker.prefix_for("patient_name") == "N"
    assert broker.replaces("patient_id") is True
    assert broker.replaces("patient_name") is False
    assert broker.replaces("accession") is True


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "Has Spaces"},
        {"name": ""},
        {"name": "demo", "broker_type": "remote"},
        {"name": "demo", "naming_scheme": "script"},
        {"name": "demo", "naming_scheme": "script", "lookup_script": "import os\n"},
        {"name": "demo", "naming_scheme": "unknown"},
        {"name": "demo", "date_shift": {"enabled": True, "min_days": 10, "max_days": -10}},
        {"name": "demo", "hash_digest_size": 1},
        {"name": "demo", "broker_type": "remote", "remote": {**REMOTE, "scheme": "ftp"}},
        {"name": "demo", "broker_type": "remote", "remote": {**REMOTE, "auth_fields": {"Token": "api_secret"}}},
    ],
)
def test_invalid_broker_configs_are_rejected(payload):
    with pytest.raises(ConfigurationError):
        parse_broker_config(payload)


def test_configs_are_immutable():
    broker = BrokerConfig(name="demo")

    with pytest.raises(ValidationError):
        broker.enabled = False


def test_registry_rejects_duplicate_names():
    with pytest.raises(ValidationError):
        RegistryConfig(brokers=(BrokerConfig(name="demo"), BrokerConfig(name="demo")))


def test_with_and_without_broker_bump_version():
    config = RegistryConfig(brokers=(BrokerConfig(name="demo"),))

    updated = config.with_broker(BrokerConfig(name="demo", description="changed"))
    removed = updated.without_broker("demo")

    assert config.version == 1
    assert updated.version == 2
    assert updated.get("demo").description == "changed"
    assert removed.version == 3
    assert removed.names() == []


def test_remote_connection_urls_and_credentials():
    connection = RemoteConnection(**REMOTE, app_name="router", app_key="k")

    assert connection.url(connection.sts_host, connection.token_path) == "https://sts.example.org/token"
    assert connection.url("hb.example.org/", "DeIdentification/lookup") == "https://hb.example.org/DeIdentification/lookup"
    assert connection.credential("password") == "hunter2"
    assert connection.credential("app_key") == "k"
    assert "hunter2" not in repr(connection)


def test_public_dict_masks_password():
    broker = BrokerConfig(name="mda", broker_type="remote", remote=REMOTE)

    data = broker.public_dict()

    assert data["remote"]["password"] == "********"
    assert data["broker_type"] == "remote"


@pytest.mark.parametrize("filename", ["brokers.yaml", "brokers.json"])
def test_save_and_load_round_trip(tmp_path: Path, filename: str):
    path = tmp_path / "conf" / filename
    config = RegistryConfig(
        version=7,
        brokers=(
            BrokerConfig(name="demo", naming_scheme="sequential", date_shift={"enabled": True, "min_days": -30}),
            BrokerConfig(name="mda", broker_type="remote", remote=REMOTE),
        ),
    )

    save_registry_config(config, path)
    loaded = load_registry_config(path)

    assert loaded == config
    assert loaded.get("mda").remote.password.get_secret_value() == "hunter2"
    assert not path.with_suffix(path.suffix + ".tmp").exists()


def test_missing_config_file_is_an_empty_registry(tmp_path: Path):
    config = load_registry_config(tmp_path / "absent.yaml")

    assert config.version == 1
    assert config.brokers == ()


def test_invalid_config_file_is_a_configuration_error(tmp_path: Path):
    path = tmp_path / "brokers.json"
    path.write_text(json.dumps({"brokers": [{"name": "demo", "naming_scheme": "script"}]}))

    with pytest.raises(ConfigurationError):
        load_registry_config(path)
