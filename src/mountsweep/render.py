# Copyright (c) Syntropy Systems
"""Markdown report and systemd mount units for a finished sweep."""
from __future__ import annotations

import posixpath
from typing import TYPE_CHECKING

from mountsweep.models.case import CaseKind
from mountsweep.models.outcome import OutcomeStatus, utc_timestamp

if TYPE_CHECKING:
    from collections.abc import Mapping

    from mountsweep.config import SweepSettings
    from mountsweep.models.case import ConfigurationCase
    from mountsweep.models.outcome import Recommendation, SweepReport

REPORT_FILE = "nfs_test_report.md"
UNITS_DIR = "systemd"

FAMILY_TITLES = {
    "NFS": "NFS Server Configs",
    "MOUNT": "NFS Client Mounts",
    "BINDFS": "Bindfs Solutions",
    "SMB": "SMB Alternatives",
    "ZFS": "ZFS Dataset Tests",
}

STATUS_NOTES = {
    OutcomeStatus.SUCCESS: "All test directories visible",
    OutcomeStatus.PARTIAL: "Some test directories visible",
    OutcomeStatus.FAILED: "No directory content visible",
    OutcomeStatus.MOUNT_FAILED: "Client couldn't mount the export",
    OutcomeStatus.ERROR: "Error applying configuration",
}

# Characters systemd leaves unescaped in unit names
_UNIT_SAFE = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789:_.")


def family_title(family: str) -> str:
    return FAMILY_TITLES.get(family, f"{family.title()} Alternatives")


def render_markdown(
    report: SweepReport,
    recommendation: Recommendation,
    *,
    settings: SweepSettings,
    cases: Mapping[str, ConfigurationCase] | None = None,
    host_info: Mapping[str, str] | None = None,
) -> str:
    """Render the full report as Markdown."""
    lines = [
        "# NFS Visibility Test Report",
        "",
        f"**Generated:** {utc_timestamp()}",
        "",
        "## Environment",
        "",
        f"- Server: {settings.server_host}",
        f"- Export path: {settings.export_path}",
        f"- Client: {settings.remote_user}@{settings.remote_host}",
    ]
    for key, value in (host_info or {}).items():
        lines.append(f"- {key}: {value}")

    lines += [
        "",
        "## Summary",
        "",
        "| Test Category | Successful | Partial | Failed | Mount Failed | Error | Total |",
        "|---------------|------------|---------|--------|--------------|-------|-------|",
    ]
    for family, counts in report.counts_by_family.items():
        total = sum(counts.values())
        lines.append(
            f"| {family_title(family)} | {counts['SUCCESS']} | {counts['PARTIAL']} "
            f"| {counts['FAILED']} | {counts['MOUNT_FAILED']} | {counts['ERROR']} | {total} |"
        )

    for family in report.counts_by_family:
        lines += [
            "",
            f"## {family_title(family)}",
            "",
            "| Configuration | Result | Visible | Notes |",
            "|---------------|--------|---------|-------|",
        ]
        for record in report.by_family(family):
            notes = STATUS_NOTES[record.status]
            if record.status is OutcomeStatus.ERROR and record.details:
                notes = f"{notes}: {record.details}"
            lines.append(
                f"| {record.case_name} | {record.status.value} "
                f"| {record.visible_count}/{record.expected_count} | {notes} |"
            )

    lines += ["", "## Recommendation", "", recommendation.message]
    chosen = recommendation.record
    case = cases.get(chosen.case_name) if cases and chosen else None
    if case is not None:
        lines += ["", "### Implementation", "", "```bash"]
        lines += implementation_commands(case, settings)
        lines += ["```"]
        units = systemd_units(case, settings)
        if units:
            lines += ["", f"Systemd units were written to `{UNITS_DIR}/`:", ""]
            lines += [f"- `{name}`" for name in units]
    lines.append("")
    return "\n".join(lines)


def _bindfs_flags(case: ConfigurationCase) -> list[str]:
    raw = case.param("bindfs_options")
    if raw is None:
        return ["--no-allow-other"]
    if isinstance(raw, list):
        return [str(v) for v in raw]
    return str(raw).split()


def _str_list(value: object, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, list):
        return ",".join(str(v) for v in value)
    return str(value)


def implementation_commands(case: ConfigurationCase, settings: SweepSettings) -> list[str]:
    """Shell commands that reproduce a case by hand on the client."""
    source = f"{settings.server_host}:{settings.export_path}"
    nfs_default = settings.default_nfs_options

    if case.kind is CaseKind.PROTOCOL_ALTERNATIVE and case.variant == "bindfs":
        staging, target = settings.staging_mount, settings.bindfs_mount
        nfs_opts = _str_list(case.param("nfs_options"), nfs_default)
        return [
            f"sudo mkdir -p {staging} {target}",
            f"sudo mount -t nfs -o {nfs_opts} {source} {staging}",
            f"sudo bindfs {' '.join(_bindfs_flags(case))} {staging} {target}",
        ]
    if case.kind is CaseKind.PROTOCOL_ALTERNATIVE and case.variant == "smb":
        opts = _str_list(case.param("options"), "rw")
        share = f"//{settings.server_host}/{settings.smb_share_name}"
        return [
            f"sudo mkdir -p {settings.smb_mount}",
            f"sudo mount -t cifs -o {opts},credentials={settings.credentials_path} "
            f"{share} {settings.smb_mount}",
        ]
    if case.kind is CaseKind.SERVER_EXPORT:
        path = case.str_param("path", settings.export_path)
        fields = {k: v for k, v in case.parameters.items() if k.startswith(("map", "security"))}
        opts = _str_list(case.param("mount_options"), nfs_default)
        return [
            f"# export {path} with {fields}",
            f"sudo mount -t nfs -o {opts} {settings.server_host}:{path} {settings.mount_point}",
        ]
    opts = _str_list(case.param("options"), nfs_default)
    return [f"sudo mount -t nfs -o {opts} {source} {settings.mount_point}"]


def unit_name_for(path: str, suffix: str = "mount") -> str:
    """systemd unit name for a mount point (as ``systemd-escape --path``)."""
    trimmed = posixpath.normpath(path).strip("/")
    if not trimmed:
        return f"-.{suffix}"
    escaped: list[str] = []
    for i, char in enumerate(trimmed):
        if char == "/":
            escaped.append("-")
        elif char in _UNIT_SAFE and not (i == 0 and char == "."):
            escaped.append(char)
        else:
            escaped.append("".join(f"\\x{b:02x}" for b in char.encode()))
    return f"{''.join(escaped)}.{suffix}"


def _unit(description: str, what: str, where: str, fstype: str, options: str, after: str = "") -> str:
    after_line = f"network-online.target {after}".strip()
    requires = f"Requires={after}\n" if after else ""
    return (
        "[Unit]\n"
        f"Description={description}\n"
        f"After={after_line}\n"
        "Wants=network-online.target\n"
        f"{requires}"
        "\n"
        "[Mount]\n"
        f"What={what}\n"
        f"Where={where}\n"
        f"Type={fstype}\n"
        f"Options={options}\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )


def systemd_units(case: ConfigurationCase, settings: SweepSettings) -> dict[str, str]:
    """Mount units that make a case permanent, keyed by file name.

    Cases that need more than mounts (loopback, autofs, mergerfs,
    individual mounts) get no units.
    """
    source = f"{settings.server_host}:{settings.export_path}"
    nfs_default = settings.default_nfs_options

    if case.kind is CaseKind.PROTOCOL_ALTERNATIVE:
        if case.variant == "bindfs":
            staging, target = settings.staging_mount, settings.bindfs_mount
            staging_unit = unit_name_for(staging)
            flags = ",".join(f.lstrip("-") for f in _bindfs_flags(case))
            return {
                staging_unit: _unit(
                    "NFS mount for bindfs",
                    source,
                    staging,
                    "nfs",
                    _str_list(case.param("nfs_options"), nfs_default),
                ),
                unit_name_for(target): _unit(
                    "Bindfs view of the NFS export", staging, target, "fuse.bindfs", flags, staging_unit
                ),
            }
        if case.variant == "smb":
            opts = _str_list(case.param("options"), "rw")
            return {
                unit_name_for(settings.smb_mount): _unit(
                    "SMB mount",
                    f"//{settings.server_host}/{settings.smb_share_name}",
                    settings.smb_mount,
                    "cifs",
                    f"{opts},credentials={settings.credentials_path}",
                )
            }
        if case.variant != "sysctl":
            return {}

    if case.kind is CaseKind.SERVER_EXPORT:
        path = case.str_param("path", settings.export_path)
        if case.str_param("protocol", "nfs") != "nfs":
            return {}
        what = f"{settings.server_host}:{path}"
        opts = _str_list(case.param("mount_options"), nfs_default)
    elif case.kind is CaseKind.CLIENT_MOUNT:
        if case.str_param("fstype", "nfs") != "nfs":
            return {}
        what = case.str_param("source", source)
        opts = _str_list(case.param("options"), nfs_default)
    else:
        what = source
        opts = _str_list(case.param("options"), nfs_default)

    return {
        unit_name_for(settings.mount_point): _unit(
            "NFS mount", what, settings.mount_point, "nfs", opts
        )
    }
