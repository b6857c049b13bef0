#!/usr/bin/env python
"""
Kubeconfig Setup - Merge dev and prod kubeconfigs and install context-switching shell helpers
"""

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import click
import yaml

__version__ = "1.0.0"

logger = logging.getLogger("kubeconfig_setup")

SECTIONS = ("clusters", "users", "contexts")

PROFILE_MARKER = "# >>> kubeconfig-setup helpers >>>"

PROFILE_TEMPLATE = """
# >>> kubeconfig-setup helpers >>>
kube_dev() {{
    kubectl config use-context {dev_context}
}}

kube_prod() {{
    kubectl config use-context {prod_context}
}}

kube_current() {{
    kubectl config current-context
}}

alias kdev='kube_dev'
alias kprod='kube_prod'
alias kcur='kube_current'
# <<< kubeconfig-setup helpers <<<
"""


class KubeconfigSetupError(click.ClickException):
    """Base class for errors reported to the user"""


class ToolNotAvailable(KubeconfigSetupError):
    pass


class SourceFileMissing(KubeconfigSetupError):
    pass


class MergeExecutionFailed(KubeconfigSetupError):
    pass


class ListingFailed(KubeconfigSetupError):
    pass


class ProfileWriteFailed(KubeconfigSetupError):
    pass


class KubectlError(Exception):
    """A kubectl invocation could not be started or exited non-zero"""


def setup_logging(verbose: bool = False) -> None:
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(handler)


def run_kubectl(kubectl: str, args: Sequence[str], env: Optional[Dict[str, str]] = None) -> str:
    """Run kubectl and return its standard output"""
    cmd = [kubectl, *args]
    logger.debug("Command: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            encoding="utf-8",
            check=True,
            env=env,
        )
    except subprocess.CalledProcessError as e:
        logger.debug("Return code: %s", e.returncode)
        detail = (e.stderr or "").strip() or f"exit status {e.returncode}"
        raise KubectlError(f"`{' '.join(cmd)}` failed: {detail}") from e
    except OSError as e:
        raise KubectlError(f"Could not run {kubectl}: {e}") from e

    logger.debug("Return code: 0")
    return result.stdout


def parse_contexts(output: str) -> List[Tuple[str, bool]]:
    """Parse headerless `kubectl config get-contexts` output into (name, is_current) pairs.

    The CURRENT column holds `*` for the active context and is blank otherwise,
    so after splitting on whitespace the name is the first token that is not
    the marker. Order is preserved.
    """
    contexts = []
    for line in output.splitlines():
        fields = line.split()
        if not fields:
            continue
        # NAME is followed by CLUSTER, AUTHINFO and NAMESPACE, so it is not the last column
        is_current = fields[0] == "*"
        if is_current:
            fields = fields[1:]
            if not fields:
                continue
        contexts.append((fields[0], is_current))
    return contexts


def load_config(config_path: Path) -> Dict:
    """Load a kubeconfig file, returning {} when it is not a YAML mapping"""
    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def detect_conflicts(base_config: Dict, new_config: Dict) -> List[Dict]:
    """Detect entries defined in both configurations with different content"""
    conflicts = []

    for section in SECTIONS:
        base_items = {
            item.get("name"): item
            for item in base_config.get(section) or []
            if isinstance(item, dict) and item.get("name")
        }
        for item in new_config.get(section) or []:
            if not isinstance(item, dict):
                continue
            name = item.get("name")
            if name in base_items and item != base_items[name]:
                conflicts.append({"type": section[:-1], "name": name})

    return conflicts


def summarize_config(config: Dict) -> Dict:
    return {
        "clusters": len(config.get("clusters") or []),
        "users": len(config.get("users") or []),
        "contexts": len(config.get("contexts") or []),
        "current-context": config.get("current-context") or "None",
    }


def write_file_atomic(path: Path, content: str) -> None:
    """Replace path with content without ever exposing a partially written file"""
    # mkstemp creates the file with mode 0600, which suits credentials
    fd, tmp_file = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_file, path)
    finally:
        if os.path.exists(tmp_file):
            os.remove(tmp_file)


def default_profile_path() -> Path:
    """Interactive startup file for the user's login shell"""
    shell = os.environ.get("SHELL", "")
    if shell.endswith("zsh"):
        return Path.home() / ".zshrc"
    return Path.home() / ".bashrc"


class KubeconfigSetup:
    def __init__(
        self,
        kubeconfig_path: Optional[Path] = None,
        profile_path: Optional[Path] = None,
        backup_dir: Optional[Path] = None,
        kubectl: str = "kubectl",
        backup: bool = True,
        dev_context: str = "dev",
        prod_context: str = "prod",
    ):
        self.kubeconfig_path = Path(kubeconfig_path or Path.home() / ".kube" / "config")
        self.profile_path = Path(profile_path or default_profile_path())
        self.backup_dir = Path(backup_dir or Path.home() / ".kube" / "backups")
        self.kubectl = kubectl
        self.backup = backup
        self.dev_context = dev_context
        self.prod_context = prod_context

    def check_kubectl(self) -> Tuple[bool, str]:
        """Check kubectl can be invoked and return its client version"""
        if shutil.which(self.kubectl) is None:
            return False, f"{self.kubectl} not found on PATH"

        try:
            output = run_kubectl(self.kubectl, ["version", "--client"])
        except KubectlError as e:
            return False, str(e)

        lines = output.strip().splitlines()
        return True, lines[0].strip() if lines else "unknown version"

    def backup_config(self) -> Optional[Path]:
        """Create a backup of the current merged config"""
        if not self.kubeconfig_path.exists():
            return None

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = self.backup_dir / f"config_backup_{timestamp}"
        counter = 1
        while backup_path.exists():
            backup_path = self.backup_dir / f"config_backup_{timestamp}_{counter}"
            counter += 1
        shutil.copy2(self.kubeconfig_path, backup_path)
        return backup_path

    def report_conflicts(self, dev_path: Path, prod_path: Path) -> List[Dict]:
        """Warn about names both sources define differently; kubectl keeps the dev entry"""
        try:
            dev_config = load_config(dev_path)
            prod_config = load_config(prod_path)
        except (OSError, yaml.YAMLError) as e:
            click.echo(f"⚠️  Skipping conflict check: {e}", err=True)
            return []

        conflicts = detect_conflicts(dev_config, prod_config)
        if conflicts:
            click.echo(f"\n⚠️  Found {len(conflicts)} conflicts (dev definition wins):", err=True)
            for conflict in conflicts:
                click.echo(f"   - {conflict['type']}: {conflict['name']}", err=True)
        return conflicts

    def merge_configs(self, dev_path: Path, prod_path: Path, dry_run: bool = False) -> str:
        """Merge and flatten both sources into the kubeconfig path, returning the merged text"""
        dev_path = Path(dev_path)
        prod_path = Path(prod_path)

        if not dry_run:
            try:
                self.kubeconfig_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise MergeExecutionFailed(f"Cannot create {self.kubeconfig_path.parent}: {e}")

        for label, path in (("Dev", dev_path), ("Prod", prod_path)):
            if not path.is_file():
                raise SourceFileMissing(f"{label} config file not found: {path}")

        self.report_conflicts(dev_path, prod_path)

        env = dict(os.environ)
        env["KUBECONFIG"] = os.pathsep.join([str(dev_path), str(prod_path)])
        try:
            merged = run_kubectl(self.kubectl, ["config", "view", "--merge", "--flatten"], env=env)
        except KubectlError as e:
            raise MergeExecutionFailed(f"Merging configs failed: {e}")

        if dry_run:
            return merged

        try:
            if self.backup:
                backup_path = self.backup_config()
                if backup_path:
                    click.echo(f"📦 Backup created: {backup_path}")
            write_file_atomic(self.kubeconfig_path, merged)
        except OSError as e:
            raise MergeExecutionFailed(f"Writing {self.kubeconfig_path} failed: {e}")

        click.echo(f"✅ Saved merged config to {self.kubeconfig_path}")
        return merged

    def show_summary(self, merged: str):
        try:
            config = yaml.safe_load(merged)
        except yaml.YAMLError as e:
            click.echo(f"⚠️  Could not parse merged config: {e}", err=True)
            return

        summary = summarize_config(config if isinstance(config, dict) else {})
        click.echo("\n📊 Merged config:")
        click.echo(f"   Clusters: {summary['clusters']}")
        click.echo(f"   Users: {summary['users']}")
        click.echo(f"   Contexts: {summary['contexts']}")
        click.echo(f"   Current context: {summary['current-context']}")

    def list_contexts(self) -> List[Tuple[str, bool]]:
        """List the contexts of the merged config, in kubectl's order"""
        try:
            output = run_kubectl(
                self.kubectl,
                ["config", "get-contexts", "--no-headers", "--kubeconfig", str(self.kubeconfig_path)],
            )
        except KubectlError as e:
            raise ListingFailed(f"Listing contexts failed: {e}")

        contexts = parse_contexts(output)
        click.echo(f"\n📋 Contexts in {self.kubeconfig_path}:")
        for name, is_current in contexts:
            click.echo(f"   {name} (current)" if is_current else f"   {name}")
        return contexts

    def profile_block(self) -> str:
        return PROFILE_TEMPLATE.format(
            dev_context=shlex.quote(self.dev_context),
            prod_context=shlex.quote(self.prod_context),
        )

    def augment_profile(self) -> bool:
        """Append the helper block to the shell profile unless it is already there"""
        try:
            self.profile_path.parent.mkdir(parents=True, exist_ok=True)
            self.profile_path.touch(exist_ok=True)
            content = self.profile_path.read_text(encoding="utf-8")

            if PROFILE_MARKER in content:
                return False

            with open(self.profile_path, "a", encoding="utf-8") as f:
                if content and not content.endswith("\n"):
                    f.write("\n")
                f.write(self.profile_block())
        except (OSError, UnicodeDecodeError) as e:
            raise ProfileWriteFailed(f"Updating {self.profile_path} failed: {e}")

        return True

    def install_helpers(self):
        if self.augment_profile():
            click.echo(f"✅ Added kdev/kprod/kcur helpers to {self.profile_path}")
            click.echo(f"   Run `source {self.profile_path}` to use them in this shell")
        else:
            click.echo(f"✅ Helpers already present in {self.profile_path}")

    def run(self, dev_path: Path, prod_path: Path, dry_run: bool = False):
        """Check kubectl, merge, list contexts and install shell helpers.

        Prerequisite and merge failures raise and abort; listing and profile
        failures are reported and the run carries on.
        """
        available, version = self.check_kubectl()
        if not available:
            raise ToolNotAvailable(f"kubectl is not available: {version}")
        click.echo(f"✅ kubectl found: {version}")

        click.echo(f"📁 Dev config: {dev_path}")
        click.echo(f"📁 Prod config: {prod_path}")
        click.echo(f"📁 Target config: {self.kubeconfig_path}")

        merged = self.merge_configs(dev_path, prod_path, dry_run=dry_run)
        self.show_summary(merged)

        if dry_run:
            click.echo("\n🔍 Dry run complete - no changes made")
            return

        try:
            self.list_contexts()
        except ListingFailed as e:
            click.echo(f"⚠️  {e.format_message()}", err=True)

        try:
            self.install_helpers()
        except ProfileWriteFailed as e:
            click.echo(f"⚠️  {e.format_message()}", err=True)

        click.echo("\n✅ Kubeconfig setup complete!")


def _path(value: Optional[str]) -> Optional[Path]:
    if value is None:
        return None
    return Path(value).expanduser().absolute()


kubeconfig_option = click.option(
    "--kubeconfig",
    "-k",
    type=click.Path(dir_okay=False),
    help="Merged config file (default: ~/.kube/config)",
)
profile_option = click.option(
    "--profile-file",
    type=click.Path(dir_okay=False),
    help="Shell profile to add helpers to (default: ~/.zshrc or ~/.bashrc)",
)
dev_context_option = click.option(
    "--dev-context", default="dev", show_default=True, help="Context selected by kdev"
)
prod_context_option = click.option(
    "--prod-context", default="prod", show_default=True, help="Context selected by kprod"
)
kubectl_option = click.option(
    "--kubectl", default="kubectl", show_default=True, help="kubectl executable"
)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log kubectl commands")
def cli(verbose):
    """🚀 Kubeconfig Setup - Merge dev and prod configs into your default kubeconfig"""
    setup_logging(verbose)


@cli.command()
@click.argument("dev_config", type=click.Path(dir_okay=False))
@click.argument("prod_config", type=click.Path(dir_okay=False))
@kubeconfig_option
@profile_option
@click.option(
    "--backup-dir",
    type=click.Path(file_okay=False),
    help="Backup directory (default: ~/.kube/backups)",
)
@click.option("--backup/--no-backup", default=True, help="Back up the existing config before replacing it")
@click.option("--dry-run", is_flag=True, help="Preview the merge without writing anything")
@dev_context_option
@prod_context_option
@kubectl_option
def merge(
    dev_config,
    prod_config,
    kubeconfig,
    profile_file,
    backup_dir,
    backup,
    dry_run,
    dev_context,
    prod_context,
    kubectl,
):
    """Merge DEV_CONFIG and PROD_CONFIG into your kubeconfig and install shell helpers"""
    setup = KubeconfigSetup(
        kubeconfig_path=_path(kubeconfig),
        profile_path=_path(profile_file),
        backup_dir=_path(backup_dir),
        kubectl=kubectl,
        backup=backup,
        dev_context=dev_context,
        prod_context=prod_context,
    )
    setup.run(_path(dev_config), _path(prod_config), dry_run=dry_run)


@cli.command()
@kubeconfig_option
@kubectl_option
def contexts(kubeconfig, kubectl):
    """List the contexts of the merged kubeconfig"""
    setup = KubeconfigSetup(kubeconfig_path=_path(kubeconfig), kubectl=kubectl)

    if not setup.list_contexts():
        click.echo("❌ No contexts found in config")


@cli.command()
@profile_option
@dev_context_option
@prod_context_option
def aliases(profile_file, dev_context, prod_context):
    """Add kdev/kprod/kcur helpers to your shell profile"""
    setup = KubeconfigSetup(
        profile_path=_path(profile_file),
        dev_context=dev_context,
        prod_context=prod_context,
    )
    setup.install_helpers()


if __name__ == "__main__":
    cli()
