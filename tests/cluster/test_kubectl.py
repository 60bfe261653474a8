"""Tests for the kubectl transport."""

from pathlib import Path
import stat

import pytest

from flux_sync.cluster.kubectl import Kubectl, classify
from flux_sync.config import KubeConfig
from flux_sync.exceptions import (
    ApplyException,
    ConflictException,
    KubectlException,
    TransportException,
)

FAKE_KUBECTL = """#!/bin/sh
echo "$@" >> "{log}"
case "$*" in
  *"get secret missing"*) exit 0 ;;
  *"get secret"*) echo '{{"metadata": {{"name": "flux-git-deploy"}}}}' ;;
  *"apply"*)
    if grep -q broken; then
      echo 'error validating data: unknown field "spec.bogus"' >&2
      exit 1
    fi
    echo "configmap/a configured" ;;
  *"delete"*)
    echo "Unable to connect to the server: dial tcp 10.0.0.1:443" >&2
    exit 1 ;;
esac
"""


@pytest.fixture
def kubectl_log(tmp_path: Path) -> Path:
    return tmp_path / "calls.log"


@pytest.fixture
def kubectl(tmp_path: Path, kubectl_log: Path) -> Kubectl:
    script = tmp_path / "kubectl"
    script.write_text(FAKE_KUBECTL.format(log=kubectl_log))
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return Kubectl(KubeConfig(kubectl=str(script), server="https://k8s:6443"))


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("Unable to connect to the server: EOF", TransportException),
        ("dial tcp 10.0.0.1:443: connect: connection refused", TransportException),
        ("Command 'kubectl apply' timed out after 60.0s", TransportException),
        (
            "Operation cannot be fulfilled: the object has been modified",
            ConflictException,
        ),
        ('The Deployment "web" is invalid: spec.replicas', ApplyException),
    ],
)
def test_classify(message: str, expected: type[KubectlException]) -> None:
    """Test kubectl failures are classified from their output."""
    err = classify(KubectlException(message))
    assert type(err) is expected
    assert str(err) == message


def test_connect_args() -> None:
    """Test connection settings are passed as flags."""
    kubectl = Kubectl(
        KubeConfig(
            server="https://k8s:6443",
            token="s3cret",
            certificate_authority="/etc/ca.crt",
            context="prod",
        )
    )
    assert kubectl._connect_args() == [
        "--server=https://k8s:6443",
        "--token=s3cret",
        "--certificate-authority=/etc/ca.crt",
        "--context=prod",
    ]
    assert kubectl._secrets() == ("--token=s3cret",)
    assert str(kubectl) == "kubectl(https://k8s:6443)"


async def test_apply(kubectl: Kubectl, kubectl_log: Path) -> None:
    """Test applying documents from stdin."""
    await kubectl.apply(b"---\nkind: ConfigMap\n")
    assert kubectl_log.read_text().splitlines() == [
        "--server=https://k8s:6443 apply -f -"
    ]


async def test_apply_rejected(kubectl: Kubectl) -> None:
    """Test a validation error is reported as an apply failure."""
    with pytest.raises(ApplyException, match="unknown field") as exc_info:
        await kubectl.apply(b"---\nkind: ConfigMap\nmetadata: {name: broken}\n")
    assert not isinstance(exc_info.value, TransportException)


async def test_delete_unreachable(kubectl: Kubectl) -> None:
    """Test an unreachable cluster is reported as a transport failure."""
    with pytest.raises(TransportException, match="Unable to connect"):
        await kubectl.delete(b"---\nkind: ConfigMap\n")


async def test_get_json(kubectl: Kubectl, kubectl_log: Path) -> None:
    """Test reading a single object."""
    obj = await kubectl.get_json("secret", "flux", "flux-git-deploy")
    assert obj == {"metadata": {"name": "flux-git-deploy"}}
    assert await kubectl.get_json("secret", "flux", "missing") is None
    assert kubectl_log.read_text().splitlines()[0] == (
        "--server=https://k8s:6443 get secret flux-git-deploy --namespace flux"
        " --ignore-not-found -o json"
    )
