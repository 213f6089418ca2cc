# Copyright (c) Syntropy Systems
"""Configuration appliers.

Each applier turns one ConfigurationCase into live state (a share on the
server, a mount on the client, or both) and returns an AppliedHandle. The
handle owns an ExitStack of release callbacks, so revert undoes the steps
in reverse order. An apply that fails halfway unwinds what it did before
the error propagates.
"""
from __future__ import annotations

import contextlib
import logging
import posixpath
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar, cast

from mountsweep.errors import ApplyError, ConfigError, MountError, RemoteExitError
from mountsweep.fixtures import ZfsDatasets
from mountsweep.management import (
    NFS_NAMESPACE,
    SMB_NAMESPACE,
    MiddlewareClient,
    ShareService,
)
from mountsweep.models.case import CaseKind, ConfigurationCase

if TYPE_CHECKING:
    from mountsweep.config import SweepSettings
    from mountsweep.models.base import JSONObject, JSONValue
    from mountsweep.remote import CommandExecutor

logger = logging.getLogger(__name__)

# Export fields a server-export case may set
EXPORT_FIELDS = (
    "maproot_user",
    "maproot_group",
    "mapall_user",
    "mapall_group",
    "security",
    "ro",
)

LOOPBACK_EXPORTS_FILE = "/etc/exports.d/mountsweep.exports"
AUTOFS_MASTER_FILE = "/etc/auto.master.d/mountsweep.autofs"
AUTOFS_MAP_FILE = "/etc/auto.mountsweep"
AUTOFS_KEY = "nfs-test"

# Checked once before a sweep; other client tools are checked per case
ESSENTIAL_CLIENT_COMMANDS = ("mount", "umount", "mountpoint", "find")

DEFAULT_SYSCTLS: dict[str, JSONValue] = {
    "fs.nfs.nlm_timeout": 30,
    "sunrpc.tcp_slot_table_entries": 128,
    "sunrpc.udp_slot_table_entries": 128,
}


@dataclass
class SweepEnvironment:
    """Everything an applier needs to reach the server and the client."""

    settings: SweepSettings
    server: CommandExecutor
    client: CommandExecutor
    middleware: MiddlewareClient = field(init=False)

    def __post_init__(self) -> None:
        self.middleware = MiddlewareClient(
            self.server, timeout=self.settings.command_timeout
        )

    @property
    def nfs_source(self) -> str:
        """NFS source of the export under test."""
        return f"{self.settings.server_host}:{self.settings.export_path}"


@dataclass
class AppliedHandle:
    """Live state of an applied case and how to release it."""

    case: ConfigurationCase
    mount_root: str
    stack: contextlib.ExitStack = field(default_factory=contextlib.ExitStack)
    reverted: bool = False

    def release(self) -> None:
        """Run release callbacks once, newest first."""
        if self.reverted:
            return
        self.reverted = True
        self.stack.close()


class ConfigurationApplier(ABC):
    """Applies and reverts one kind of configuration case."""

    kind: ClassVar[CaseKind]
    variant: ClassVar[str | None] = None
    # Commands that must exist before any case of this kind can run
    client_commands: ClassVar[tuple[str, ...]] = ()
    server_commands: ClassVar[tuple[str, ...]] = ()

    env: SweepEnvironment

    def __init__(self, env: SweepEnvironment) -> None:
        self.env = env

    @property
    def settings(self) -> SweepSettings:
        return self.env.settings

    @property
    def client(self) -> CommandExecutor:
        return self.env.client

    def apply(self, case: ConfigurationCase) -> AppliedHandle:
        """Apply ``case`` and return a handle for reverting it.

        Raises:
            MountError: The client-side mount failed
            ApplyError: A tool is missing or any other step failed

        """
        self.require_tools()
        stack = contextlib.ExitStack()
        try:
            mount_root = self._apply(case, stack)
        except BaseException:
            try:
                stack.close()
            except Exception:
                logger.exception("Unwinding partial apply of %s failed", case.name)
            raise
        return AppliedHandle(case=case, mount_root=mount_root, stack=stack)

    def require_tools(self) -> None:
        """Fail with ApplyError when a non-essential client tool is missing."""
        for tool in self.client_commands:
            if tool in ESSENTIAL_CLIENT_COMMANDS:
                continue
            if not self.client.command_exists(tool, elevated=True):
                msg = f"{tool} not installed on the client"
                raise ApplyError(msg)

    def revert(self, handle: AppliedHandle) -> None:
        """Undo an applied case. Reverting twice is a no-op."""
        handle.release()

    @abstractmethod
    def _apply(self, case: ConfigurationCase, stack: contextlib.ExitStack) -> str:
        """Do the work, pushing a release callback per step; return the mount root."""

    # Shared steps

    def mount(
        self,
        stack: contextlib.ExitStack,
        fstype: str,
        source: str,
        target: str,
        options: str = "",
    ) -> None:
        """Mount source on the client and register the unmount."""
        self.client.ensure_dir(target)
        if self.client.is_mounted(target):
            logger.warning("%s is already mounted, unmounting leftover", target)
            _ = self.client.unmount(target, force=True)

        argv = ["mount", "-t", fstype]
        if options:
            argv += ["-o", options]
        argv += [source, target]
        try:
            _ = self.client.execute(argv, elevated=True)
        except RemoteExitError as e:
            msg = f"{fstype} mount of {source} on {target} failed: {e.stderr or e.code}"
            raise MountError(msg) from e
        logger.info("Mounted %s on %s (%s)", source, target, options or "defaults")
        _ = stack.callback(self.client.unmount, target, force=True)

    def run_fuse(
        self, stack: contextlib.ExitStack, argv: list[str], target: str, label: str
    ) -> None:
        """Start a FUSE filesystem on target and register the unmount."""
        self.client.ensure_dir(target)
        try:
            _ = self.client.execute(argv, elevated=True)
        except RemoteExitError as e:
            msg = f"{label} mount on {target} failed: {e.stderr or e.code}"
            raise MountError(msg) from e
        logger.info("%s mounted on %s", label, target)
        _ = stack.callback(self.client.unmount, target)

    def ensure_nfs_export(
        self,
        stack: contextlib.ExitStack,
        path: str,
        update_fields: JSONObject | None = None,
    ) -> None:
        """Create or update the NFS export for path, then restart NFS.

        Middleware failures surface as ManagementError.
        """
        shares = ShareService(self.env.middleware, NFS_NAMESPACE)
        create_config: JSONObject = {
            "path": path,
            "comment": "Temporary test export",
            "hosts": [self.settings.remote_host],
            "ro": False,
            "enabled": True,
            "networks": [],
        }
        record, previous = shares.ensure(path, create_config, update_fields or {})
        _ = stack.callback(shares.restart)
        _ = stack.callback(shares.restore, record, previous)
        shares.restart()

    def ensure_smb_share(self, stack: contextlib.ExitStack, path: str) -> str:
        """Create an SMB share for path unless one exists; return its name.

        A new share for the export path is named ``smb_share_name``; any
        other path is shared under its last component.
        """
        shares = ShareService(self.env.middleware, SMB_NAMESPACE)
        if path.rstrip("/") == self.settings.export_path.rstrip("/"):
            name = self.settings.smb_share_name
        else:
            name = posixpath.basename(path.rstrip("/")) or self.settings.smb_share_name
        create_config: JSONObject = {
            "path": path,
            "name": name,
            "comment": "Temporary test share",
            "purpose": "NO_PRESET",
            "enabled": True,
            "ro": False,
            "browsable": True,
        }
        record, previous = shares.ensure(path, create_config, {})
        if previous is None:
            _ = stack.callback(shares.restart)
            _ = stack.callback(shares.restore, record, previous)
            shares.restart()
        existing = record.get("name")
        return existing if isinstance(existing, str) and existing else name

    def smb_source(self, share_name: str) -> str:
        return f"//{self.settings.server_host}/{share_name}"

    def write_smb_credentials(self, stack: contextlib.ExitStack) -> str:
        """Write the client credentials file and register its removal."""
        if not self.settings.smb_password:
            msg = "SMB password not configured (set MOUNTSWEEP_SMB_PASSWORD)"
            raise ApplyError(msg)
        path = self.settings.credentials_path
        content = (
            f"username={self.settings.remote_user}\n"
            f"password={self.settings.smb_password}\n"
        )
        self.client.write_file(path, content, mode="600")
        _ = stack.callback(self.client.remove_file, path)
        return path


_REGISTRY: dict[tuple[CaseKind, str | None], type[ConfigurationApplier]] = {}


def register(cls: type[ConfigurationApplier]) -> type[ConfigurationApplier]:
    """Class decorator adding an applier to the registry."""
    key = (cls.kind, cls.variant)
    if key in _REGISTRY:
        msg = f"Duplicate applier for {key}"
        raise ValueError(msg)
    _REGISTRY[key] = cls
    return cls


def applier_class(case: ConfigurationCase) -> type[ConfigurationApplier]:
    """Look up the applier class for a case."""
    variant = case.variant if case.kind is CaseKind.PROTOCOL_ALTERNATIVE else None
    try:
        return _REGISTRY[(case.kind, variant)]
    except KeyError:
        known = ", ".join(sorted(v for k, v in _REGISTRY if v and k is case.kind))
        msg = (
            f"No applier for case '{case.name}' "
            f"(kind={case.kind.value}, variant={case.variant}); known variants: {known}"
        )
        raise ConfigError(msg) from None


def registered_variants() -> list[str]:
    """Names of all protocol-alternative variants."""
    return sorted(v for (k, v) in _REGISTRY if v and k is CaseKind.PROTOCOL_ALTERNATIVE)


def _options(value: JSONValue, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, list):
        return ",".join(str(v) for v in value)
    return str(value)


def _flags(value: JSONValue, default: list[str]) -> list[str]:
    if value is None:
        return list(default)
    if isinstance(value, list):
        return [str(v) for v in value]
    return str(value).split()


@register
class ServerExportApplier(ConfigurationApplier):
    """Reconfigures the share on the server and mounts it from the client.

    Parameters:
        path: exported directory (default: the configured export path)
        protocol: ``nfs`` (default) or ``smb``
        zfs_properties: {dataset: {property: value}} set for the case
        mount_options: client mount options
        maproot_user, maproot_group, mapall_user, mapall_group, security, ro:
            NFS export fields; only the ones present are changed
    """

    kind = CaseKind.SERVER_EXPORT
    client_commands = ("mount", "umount", "mountpoint")
    server_commands = ("midclt",)

    def _apply(self, case: ConfigurationCase, stack: contextlib.ExitStack) -> str:
        path = case.str_param("path", self.settings.export_path)
        protocol = case.str_param("protocol", "nfs")

        self._set_zfs_properties(case, stack)

        target = self.settings.mount_point
        if protocol == "nfs":
            fields: JSONObject = {
                name: case.parameters[name] for name in EXPORT_FIELDS if name in case.parameters
            }
            self.ensure_nfs_export(stack, path, fields)
            options = _options(case.param("mount_options"), self.settings.default_nfs_options)
            self.mount(stack, "nfs", f"{self.settings.server_host}:{path}", target, options)
        elif protocol == "smb":
            share_name = self.ensure_smb_share(stack, path)
            credentials = self.write_smb_credentials(stack)
            options = _options(case.param("mount_options"), "rw")
            share = self.smb_source(share_name)
            self.mount(stack, "cifs", share, target, f"{options},credentials={credentials}")
        else:
            msg = f"Unknown protocol '{protocol}' in case '{case.name}'"
            raise ConfigError(msg)
        return target

    def _set_zfs_properties(
        self, case: ConfigurationCase, stack: contextlib.ExitStack
    ) -> None:
        raw = case.param("zfs_properties")
        if raw is None:
            return
        if not isinstance(raw, dict):
            msg = f"zfs_properties of case '{case.name}' must be a mapping"
            raise ConfigError(msg)

        zfs = ZfsDatasets(self.env.server)
        for dataset, props in cast("Mapping[str, JSONValue]", raw).items():
            if not isinstance(props, dict):
                msg = f"zfs_properties['{dataset}'] of case '{case.name}' must be a mapping"
                raise ConfigError(msg)
            for prop, value in props.items():
                try:
                    zfs.set_temporarily(dataset, prop, str(value), stack)
                except RemoteExitError as e:
                    msg = f"Cannot set {prop}={value} on {dataset}: {e}"
                    raise ApplyError(msg) from e


@register
class ClientMountApplier(ConfigurationApplier):
    """Mounts the unchanged export with case-specific client options.

    Parameters:
        fstype: filesystem type (default ``nfs``)
        options: mount options (string or list)
        source: mount source (default: server:export_path)
    """

    kind = CaseKind.CLIENT_MOUNT
    client_commands = ("mount", "umount", "mountpoint")

    def _apply(self, case: ConfigurationCase, stack: contextlib.ExitStack) -> str:
        target = self.settings.mount_point
        self.mount(
            stack,
            case.str_param("fstype", "nfs"),
            case.str_param("source", self.env.nfs_source),
            target,
            _options(case.param("options"), self.settings.default_nfs_options),
        )
        return target


@register
class BindfsApplier(ConfigurationApplier):
    """NFS mount to a staging directory, re-presented through bindfs.

    Parameters:
        nfs_options: options of the staging NFS mount
        bindfs_options: bindfs flags (list or whitespace separated string)
    """

    kind = CaseKind.PROTOCOL_ALTERNATIVE
    variant = "bindfs"
    client_commands = ("mount", "umount", "mountpoint", "bindfs")

    def _apply(self, case: ConfigurationCase, stack: contextlib.ExitStack) -> str:
        staging = self.settings.staging_mount
        target = self.settings.bindfs_mount
        self.mount(
            stack,
            "nfs",
            self.env.nfs_source,
            staging,
            _options(case.param("nfs_options"), self.settings.default_nfs_options),
        )
        flags = _flags(case.param("bindfs_options"), ["--no-allow-other"])
        self.run_fuse(stack, ["bindfs", *flags, staging, target], target, "bindfs")
        return target


@register
class SmbApplier(ConfigurationApplier):
    """Shares the export over SMB and mounts it with mount.cifs.

    Parameters:
        options: cifs mount options (default ``rw``)
        map_ids: add uid=/gid= of the client login user
    """

    kind = CaseKind.PROTOCOL_ALTERNATIVE
    variant = "smb"
    client_commands = ("mount", "umount", "mountpoint", "mount.cifs")
    server_commands = ("midclt",)

    def _apply(self, case: ConfigurationCase, stack: contextlib.ExitStack) -> str:
        share_name = self.ensure_smb_share(stack, self.settings.export_path)
        credentials = self.write_smb_credentials(stack)

        options = _options(case.param("options"), "rw")
        if case.param("map_ids"):
            uid, gid = self.client.user_ids()
            options = f"{options},uid={uid},gid={gid}"

        target = self.settings.smb_mount
        share = self.smb_source(share_name)
        self.mount(stack, "cifs", share, target, f"{options},credentials={credentials}")
        return target


@register
class LoopbackApplier(ConfigurationApplier):
    """Re-exports the client's NFS mount over a local NFS server.

    Parameters:
        nfs_options: options of the staging NFS mount
        export_options: /etc/exports options of the re-export
        options: options of the localhost mount
    """

    kind = CaseKind.PROTOCOL_ALTERNATIVE
    variant = "loopback"
    client_commands = ("mount", "umount", "mountpoint", "exportfs")

    def _apply(self, case: ConfigurationCase, stack: contextlib.ExitStack) -> str:
        staging = self.settings.staging_mount
        export_dir = self.settings.loopback_export_dir
        target = self.settings.loopback_mount

        self.mount(
            stack,
            "nfs",
            self.env.nfs_source,
            staging,
            _options(case.param("nfs_options"), self.settings.default_nfs_options),
        )

        self.client.ensure_dir(export_dir)
        try:
            _ = self.client.execute(["mount", "--bind", staging, export_dir], elevated=True)
        except RemoteExitError as e:
            msg = f"bind mount of {staging} on {export_dir} failed: {e.stderr or e.code}"
            raise MountError(msg) from e
        _ = stack.callback(self.client.unmount, export_dir)

        export_options = case.str_param(
            "export_options", "rw,sync,no_subtree_check,no_root_squash"
        )
        try:
            _ = stack.callback(self._refresh_exports)
            self.client.write_file(LOOPBACK_EXPORTS_FILE, f"{export_dir} *({export_options})\n")
            _ = stack.callback(self.client.remove_file, LOOPBACK_EXPORTS_FILE)
            self._refresh_exports()
        except RemoteExitError as e:
            msg = f"Cannot re-export {export_dir}: {e}"
            raise ApplyError(msg) from e

        self.mount(
            stack,
            "nfs",
            f"localhost:{export_dir}",
            target,
            _options(case.param("options"), self.settings.default_nfs_options),
        )
        return target

    def _refresh_exports(self) -> None:
        _ = self.client.execute(["exportfs", "-ra"], elevated=True)


@register
class AutofsApplier(ConfigurationApplier):
    """Lets autofs mount the export on first access.

    Parameters:
        options: NFS options in the autofs map
        timeout: autofs idle timeout in seconds
    """

    kind = CaseKind.PROTOCOL_ALTERNATIVE
    variant = "autofs"
    client_commands = ("automount", "systemctl", "mountpoint")

    def _apply(self, case: ConfigurationCase, stack: contextlib.ExitStack) -> str:
        root = self.settings.autofs_root
        options = _options(case.param("options"), "rw,hard,intr,noatime")
        timeout = case.str_param("timeout", "60")
        target = posixpath.join(root, AUTOFS_KEY)

        try:
            _ = stack.callback(self._restart_autofs)
            self.client.write_file(
                AUTOFS_MASTER_FILE, f"{root} {AUTOFS_MAP_FILE} --timeout={timeout}\n"
            )
            _ = stack.callback(self.client.remove_file, AUTOFS_MASTER_FILE)
            self.client.write_file(
                AUTOFS_MAP_FILE, f"{AUTOFS_KEY} -fstype=nfs,{options} {self.env.nfs_source}\n"
            )
            _ = stack.callback(self.client.remove_file, AUTOFS_MAP_FILE)
            self._restart_autofs()
        except RemoteExitError as e:
            msg = f"Cannot configure autofs: {e}"
            raise ApplyError(msg) from e

        # First access triggers the automount
        _ = self.client.execute(["ls", target], elevated=True, check=False)
        if not self.client.is_mounted(target):
            msg = f"autofs did not mount {self.env.nfs_source} on {target}"
            raise MountError(msg)
        return target

    def _restart_autofs(self) -> None:
        _ = self.client.execute(["systemctl", "restart", "autofs"], elevated=True)


@register
class MergerfsApplier(ConfigurationApplier):
    """Presents the NFS mount through a mergerfs union.

    Parameters:
        nfs_options: options of the staging NFS mount
        options: mergerfs options
    """

    kind = CaseKind.PROTOCOL_ALTERNATIVE
    variant = "mergerfs"
    client_commands = ("mount", "umount", "mountpoint", "mergerfs")

    def _apply(self, case: ConfigurationCase, stack: contextlib.ExitStack) -> str:
        staging = self.settings.staging_mount
        target = self.settings.union_mount
        self.mount(
            stack,
            "nfs",
            self.env.nfs_source,
            staging,
            _options(case.param("nfs_options"), self.settings.default_nfs_options),
        )
        options = _options(case.param("options"), "defaults,allow_other,use_ino")
        self.run_fuse(
            stack, ["mergerfs", "-o", options, staging, target], target, "mergerfs"
        )
        return target


@register
class IndividualApplier(ConfigurationApplier):
    """Mounts every expected directory as its own NFS mount.

    A directory that fails to mount is skipped so the probe reports it
    missing. The case fails to mount only when none of them mount.

    Parameters:
        options: NFS mount options
        create_exports: create an export per directory first
    """

    kind = CaseKind.PROTOCOL_ALTERNATIVE
    variant = "individual"
    client_commands = ("mount", "umount", "mountpoint")

    def _apply(self, case: ConfigurationCase, stack: contextlib.ExitStack) -> str:
        root = self.settings.individual_root
        options = _options(case.param("options"), self.settings.default_nfs_options)
        paths = case.expected_paths or self.settings.test_dirs

        mounted = 0
        for rel in paths:
            source_path = posixpath.join(self.settings.export_path, rel)
            if case.param("create_exports"):
                self.ensure_nfs_export(stack, source_path)
            try:
                self.mount(
                    stack,
                    "nfs",
                    f"{self.settings.server_host}:{source_path}",
                    posixpath.join(root, rel),
                    options,
                )
            except MountError as e:
                logger.warning("Skipping %s: %s", rel, e)
                continue
            mounted += 1

        if mounted == 0:
            msg = f"None of {len(paths)} directories could be mounted under {root}"
            raise MountError(msg)
        return root


@register
class SysctlApplier(ConfigurationApplier):
    """Tunes client kernel parameters, then mounts the export.

    Parameters:
        sysctls: {name: value} (default: NLM timeout and RPC slot tables)
        options: NFS mount options
    """

    kind = CaseKind.PROTOCOL_ALTERNATIVE
    variant = "sysctl"
    client_commands = ("mount", "umount", "mountpoint", "sysctl")

    def _apply(self, case: ConfigurationCase, stack: contextlib.ExitStack) -> str:
        raw = case.param("sysctls")
        if raw is None:
            sysctls: Mapping[str, JSONValue] = DEFAULT_SYSCTLS
        elif isinstance(raw, dict):
            sysctls = raw
        else:
            msg = f"sysctls of case '{case.name}' must be a mapping"
            raise ConfigError(msg)

        for name, value in sysctls.items():
            try:
                old = self.client.execute(["sysctl", "-n", name], elevated=True).stdout.strip()
                _ = self.client.execute(["sysctl", "-w", f"{name}={value}"], elevated=True)
            except RemoteExitError as e:
                msg = f"Cannot set {name}={value}: {e}"
                raise ApplyError(msg) from e
            _ = stack.callback(self._restore, name, old)

        target = self.settings.mount_point
        self.mount(
            stack,
            "nfs",
            self.env.nfs_source,
            target,
            _options(case.param("options"), self.settings.default_nfs_options),
        )
        return target

    def _restore(self, name: str, value: str) -> None:
        _ = self.client.execute(["sysctl", "-w", f"{name}={value}"], elevated=True)
