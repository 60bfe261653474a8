"""Tests for loading resources."""

from pathlib import Path

import pytest
import yaml

from flux_sync.exceptions import DuplicateResourceError, InputException
from flux_sync.kinds import KindTable
from flux_sync.resource import (
    CLUSTER_SCOPE,
    ResourceID,
    load_files,
    parse_documents,
)

from .support import manifest


def test_resource_id() -> None:
    """Test rendering and parsing resource ids."""
    rid = ResourceID("default", "Deployment", "podinfo")
    assert str(rid) == "default:deployment/podinfo"
    assert ResourceID.parse("default:deployment/podinfo") == rid


def test_resource_id_cluster_scope() -> None:
    """Test a resource id with no namespace."""
    rid = ResourceID("", "Namespace", "flux")
    assert rid.namespace == CLUSTER_SCOPE
    assert str(rid) == "<cluster>:namespace/flux"
    assert ResourceID.parse(str(rid)) == rid


@pytest.mark.parametrize(
    "value",
    ["", "default", "default:deployment", ":deployment/foo", "default:/foo"],
)
def test_resource_id_invalid(value: str) -> None:
    """Test malformed resource ids."""
    with pytest.raises(InputException):
        ResourceID.parse(value)


def test_parse_documents(kinds: KindTable) -> None:
    """Test parsing a multi-document stream."""
    content = "\n---\n".join(
        [
            manifest("Namespace", "podinfo", namespace=None),
            manifest(
                "Deployment", "podinfo", namespace="podinfo", api_version="apps/v1"
            ),
            manifest("ConfigMap", "settings", namespace=None),
        ]
    )
    result = parse_documents(content, "apps.yaml", kinds)
    assert not result.errors
    assert sorted(str(rid) for rid in result.resources) == [
        "<cluster>:namespace/podinfo",
        "default:configmap/settings",
        "podinfo:deployment/podinfo",
    ]
    deployment = result.resources[ResourceID("podinfo", "Deployment", "podinfo")]
    assert deployment.kind == "Deployment"
    assert deployment.api_version == "apps/v1"
    assert deployment.source == "apps.yaml"
    assert yaml.safe_load(deployment.payload)["metadata"]["name"] == "podinfo"


def test_parse_list(kinds: KindTable) -> None:
    """Test a List document is expanded into its items."""
    content = yaml.safe_dump(
        {
            "apiVersion": "v1",
            "kind": "List",
            "items": [
                yaml.safe_load(manifest("ConfigMap", "a")),
                yaml.safe_load(manifest("ConfigMap", "b")),
            ],
        }
    )
    result = parse_documents(content, "list.yaml", kinds)
    assert sorted(rid.name for rid in result.resources) == ["a", "b"]


def test_parse_malformed_documents(kinds: KindTable) -> None:
    """Test unusable documents are reported without losing the rest."""
    content = "\n---\n".join(
        [
            manifest("ConfigMap", "good"),
            "kind: ConfigMap\nmetadata:\n  name: no-version\n",
            "apiVersion: v1\nkind: ConfigMap\nmetadata: {}\n",
            "- just\n- a list\n",
        ]
    )
    result = parse_documents(content, "mixed.yaml", kinds)
    assert [rid.name for rid in result.resources] == ["good"]
    assert len(result.errors) == 3
    assert all(err.resource_id is None for err in result.errors)
    assert all(err.source == "mixed.yaml" for err in result.errors)


def test_parse_invalid_yaml(kinds: KindTable) -> None:
    """Test a syntax error is reported as an error for the source."""
    result = parse_documents("kind: [unclosed\n", "broken.yaml", kinds)
    assert not result.resources
    assert len(result.errors) == 1
    assert "invalid YAML" in result.errors[0].error


def test_parse_duplicate(kinds: KindTable) -> None:
    """Test the same resource declared twice is a hard error."""
    content = "\n---\n".join([manifest("ConfigMap", "a"), manifest("ConfigMap", "a")])
    with pytest.raises(DuplicateResourceError, match="default:configmap/a"):
        parse_documents(content, "dup.yaml", kinds)


def test_policies_and_addons(kinds: KindTable) -> None:
    """Test policy annotations and addon detection."""
    content = "\n---\n".join(
        [
            manifest(
                "Deployment",
                "ignored",
                annotations={"fluxcd.io/ignore": "true", "other.io/x": "y"},
            ),
            manifest(
                "Service",
                "dns",
                namespace="kube-system",
                labels={"kubernetes.io/cluster-service": "true"},
            ),
            manifest(
                "ConfigMap",
                "addon",
                namespace="kube-system",
                labels={"addonmanager.kubernetes.io/mode": "EnsureExists"},
            ),
            manifest("ConfigMap", "plain", namespace="kube-system"),
        ]
    )
    resources = parse_documents(content, "x.yaml", kinds).resources
    ignored = resources[ResourceID("default", "Deployment", "ignored")]
    assert ignored.policies == {"ignore": "true"}
    assert ignored.ignored
    assert not ignored.is_addon
    assert resources[ResourceID("kube-system", "Service", "dns")].is_addon
    assert resources[ResourceID("kube-system", "ConfigMap", "addon")].is_addon
    assert not resources[ResourceID("kube-system", "ConfigMap", "plain")].is_addon


def test_identifying_payload(kinds: KindTable) -> None:
    """Test the document used to delete a resource."""
    resources = parse_documents(
        manifest("Namespace", "podinfo", namespace=None), "ns.yaml", kinds
    ).resources
    (resource,) = resources.values()
    assert yaml.safe_load(resource.identifying_payload()) == {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {"name": "podinfo"},
    }


async def test_load_files(tmp_path: Path, kinds: KindTable) -> None:
    """Test loading every YAML file under a directory."""
    (tmp_path / "apps" / "podinfo").mkdir(parents=True)
    (tmp_path / "apps" / "podinfo" / "deploy.yaml").write_text(
        manifest("Deployment", "podinfo")
    )
    (tmp_path / "apps" / "config.yml").write_text(manifest("ConfigMap", "settings"))
    (tmp_path / "apps" / "README.md").write_text("# not a manifest\n")
    (tmp_path / "apps" / ".hidden").mkdir()
    (tmp_path / "apps" / ".hidden" / "skip.yaml").write_text(manifest("Secret", "s"))

    result = await load_files(tmp_path, ["apps"], kinds)
    assert not result.errors
    assert sorted(str(rid) for rid in result.resources) == [
        "default:configmap/settings",
        "default:deployment/podinfo",
    ]
    sources = sorted(r.source for r in result.resources.values())
    assert sources == ["apps/config.yml", "apps/podinfo/deploy.yaml"]


async def test_load_single_file(tmp_path: Path, kinds: KindTable) -> None:
    """Test loading a path that names a file."""
    (tmp_path / "one.yaml").write_text(manifest("ConfigMap", "one"))
    result = await load_files(tmp_path, ["one.yaml"], kinds)
    assert [rid.name for rid in result.resources] == ["one"]


async def test_load_missing_path(tmp_path: Path, kinds: KindTable) -> None:
    """Test loading a path that does not exist."""
    with pytest.raises(InputException, match="does not exist"):
        await load_files(tmp_path, ["missing"], kinds)
