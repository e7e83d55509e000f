import pytest

from paasdeploy.errors import ConfigurationError
from paasdeploy.models import ServiceSelection
from paasdeploy.services.selection import SelectionLoader


def test_load_selection_document(tmp_path):
    path = tmp_path / "selection.yml"
    path.write_text(
        "tenant_id: acme\n"
        "domain: acme.example.com\n"
        "services:\n"
        "  nextcloud:\n"
        "    enabled: true\n"
        "    config:\n"
        "      storage_gb: 50\n"
        "      public: false\n"
        "  vikunja: false\n"
        "  gitea:\n",
        encoding="utf-8",
    )

    selection = SelectionLoader().load(str(path))

    assert selection.tenant_id == "acme"
    assert selection.domain == "acme.example.com"
    assert selection.services["nextcloud"] == ServiceSelection(
        enabled=True,
        config={"storage_gb": "50", "public": "false"},
    )
    assert selection.enabled_services() == ["nextcloud"]


def test_caller_overrides_tenant_and_domain():
    selection = SelectionLoader().from_mapping(
        {"tenant": "from-doc", "services": {}},
        tenant_id="from-cli",
        domain="cli.example.com",
    )

    assert selection.tenant_id == "from-cli"
    assert selection.domain == "cli.example.com"


def test_domain_defaults_to_localhost():
    assert SelectionLoader().from_mapping({"tenant_id": "acme"}).domain == "localhost"


@pytest.mark.parametrize(
    "document, message",
    [
        ([], "root must be a mapping"),
        ({"services": {}}, "tenant_id"),
        ({"tenant_id": "acme", "services": ["nextcloud"]}, "must be a mapping"),
        ({"tenant_id": "acme", "services": {"nextcloud": {"enabled": "yes"}}}, "non-boolean"),
        ({"tenant_id": "acme", "services": {"nextcloud": {"enabled": True, "config": {"a": {"b": 1}}}}}, "nextcloud"),
    ],
)
def test_invalid_documents_are_configuration_errors(document, message):
    with pytest.raises(ConfigurationError, match=message):
        SelectionLoader().from_mapping(document)


def test_missing_selection_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        SelectionLoader().load(str(tmp_path / "missing.yml"))
