import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from kubeconfig_setup import KubeconfigSetup

DEV_CONFIG = """\
apiVersion: v1
kind: Config
clusters:
- cluster:
    server: https://dev.example.com:6443
  name: dev-cluster
contexts:
- context:
    cluster: dev-cluster
    user: dev-user
  name: dev
current-context: dev
users:
- name: dev-user
  user:
    token: dev-token
"""

PROD_CONFIG = """\
apiVersion: v1
kind: Config
clusters:
- cluster:
    server: https://prod.example.com:6443
  name: prod-cluster
contexts:
- context:
    cluster: prod-cluster
    user: prod-user
  name: prod
current-context: prod
users:
- name: prod-user
  user:
    token: prod-token
"""

MERGED_CONFIG = """\
apiVersion: v1
clusters:
- cluster:
    server: https://dev.example.com:6443
  name: dev-cluster
- cluster:
    server: https://prod.example.com:6443
  name: prod-cluster
contexts:
- context:
    cluster: dev-cluster
    user: dev-user
  name: dev
- context:
    cluster: prod-cluster
    user: prod-user
  name: prod
current-context: dev
kind: Config
preferences: {}
users:
- name: dev-user
  user:
    token: dev-token
- name: prod-user
  user:
    token: prod-token
"""

CONTEXTS_OUTPUT = (
    "*         dev    dev-cluster    dev-user    \n"
    "          prod   prod-cluster   prod-user   \n"
)

VERSION_OUTPUT = "Client Version: v1.30.0\nKustomize Version: v5.0.4-0.20230601165947-6ce0bf390ce3\n"


class FakeKubectl:
    """Stands in for subprocess.run, answering the kubectl commands the tool issues"""

    def __init__(self, merged=MERGED_CONFIG, contexts=CONTEXTS_OUTPUT, fail=()):
        self.merged = merged
        self.contexts = contexts
        self.fail = set(fail)
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        args = cmd[1:]
        key = args[0] if args[0] == "version" else args[1]

        if key in self.fail:
            raise subprocess.CalledProcessError(1, cmd, output="", stderr=f"{key} failed")

        stdout = {
            "version": VERSION_OUTPUT,
            "view": self.merged,
            "get-contexts": self.contexts,
        }[key]
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    def commands(self):
        return [cmd[1:] for cmd, _ in self.calls]


@pytest.fixture
def source_configs(tmp_path: Path):
    sources = tmp_path / "sources"
    sources.mkdir()
    dev_path = sources / "dev.yaml"
    prod_path = sources / "prod.yaml"
    dev_path.write_text(DEV_CONFIG)
    prod_path.write_text(PROD_CONFIG)
    return dev_path, prod_path


@pytest.fixture
def paths(tmp_path: Path):
    home = tmp_path / "home"
    return {
        "kubeconfig": home / ".kube" / "config",
        "profile": home / ".bashrc",
        "backups": home / ".kube" / "backups",
    }


@pytest.fixture
def setup(paths) -> KubeconfigSetup:
    return KubeconfigSetup(
        kubeconfig_path=paths["kubeconfig"],
        profile_path=paths["profile"],
        backup_dir=paths["backups"],
    )


@pytest.fixture
def kubectl():
    fake = FakeKubectl()
    with patch("kubeconfig_setup.subprocess.run", side_effect=fake), patch(
        "kubeconfig_setup.shutil.which", return_value="/usr/local/bin/kubectl"
    ):
        yield fake
