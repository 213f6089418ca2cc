# Copyright (c) Syntropy Systems
"""Built-in sweep plans."""
from __future__ import annotations

import contextlib
import posixpath
from functools import partial
from typing import TYPE_CHECKING

from mountsweep.errors import ConfigError
from mountsweep.fixtures import CHILD_FILE, NestedLayout, nested_datasets
from mountsweep.models.case import CaseKind, ConfigurationCase
from mountsweep.sweep import SweepPlan

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from mountsweep.appliers import SweepEnvironment
    from mountsweep.config import SweepSettings
    from mountsweep.models.base import JSONValue

FAMILIES = ("server", "client", "alternatives", "hypothesis", "properties", "real")

# Order of `run all`: every family, plain exports before the ZFS fixtures
ALL_ORDER = FAMILIES


def _case(
    name: str,
    kind: CaseKind,
    parameters: dict[str, JSONValue] | None = None,
    **extra: object,
) -> ConfigurationCase:
    return ConfigurationCase.model_validate(
        {"name": name, "kind": kind, "parameters": parameters or {}, **extra}
    )


def server_plan(settings: SweepSettings) -> SweepPlan:
    """NFS export mapping configurations on the server."""
    user = settings.remote_user
    unmapped: dict[str, JSONValue] = {
        "maproot_user": None,
        "maproot_group": None,
        "mapall_user": None,
        "mapall_group": None,
    }
    cases = [
        _case("no-mapping", CaseKind.SERVER_EXPORT, {**unmapped, "security": []}),
        _case(
            "root-mapping",
            CaseKind.SERVER_EXPORT,
            {**unmapped, "maproot_user": "root", "maproot_group": "wheel", "security": ["SYS"]},
        ),
        _case(
            "all-to-root",
            CaseKind.SERVER_EXPORT,
            {**unmapped, "mapall_user": "root", "mapall_group": "wheel", "security": []},
        ),
        _case(
            f"map-to-{user}",
            CaseKind.SERVER_EXPORT,
            {**unmapped, "mapall_user": user, "mapall_group": user, "security": []},
        ),
    ]
    return SweepPlan("server", cases)


def client_plan(settings: SweepSettings) -> SweepPlan:  # noqa: ARG001
    """NFS client mount options against the unchanged export."""
    options = [
        ("nfsv3-basic", "rw,hard,vers=3"),
        ("nfsv4-basic", "rw,hard,vers=4"),
        ("nfsv3-no-cache", "rw,hard,noac,vers=3"),
        ("nfsv4-no-cache", "rw,hard,noac,vers=4"),
        ("actimeo-0", "rw,hard,actimeo=0"),
        ("lookupcache-none", "rw,hard,lookupcache=none"),
        ("all-cache-options", "rw,hard,noac,actimeo=0,lookupcache=none"),
        ("nosuid", "rw,hard,nosuid"),
        ("large-rsize-wsize", "rw,hard,rsize=1048576,wsize=1048576"),
        ("nolock", "rw,hard,nolock"),
        ("noacl", "rw,hard,noacl"),
        ("nfsv4-sec-sys", "rw,hard,vers=4,sec=sys"),
    ]
    cases = [_case(name, CaseKind.CLIENT_MOUNT, {"options": opts}) for name, opts in options]
    return SweepPlan("client", cases)


def alternatives_plan(settings: SweepSettings) -> SweepPlan:
    """Protocol alternatives, strongest candidates first."""
    user = settings.remote_user
    force = [f"--force-user={user}", f"--force-group={user}"]
    alt = CaseKind.PROTOCOL_ALTERNATIVE
    cases = [
        _case("bindfs-default", alt, {"bindfs_options": ["--no-allow-other"]}, variant="bindfs"),
        _case("bindfs-user-mapping", alt, {"bindfs_options": force}, variant="bindfs"),
        _case(
            "bindfs-chmod-ignore",
            alt,
            {"bindfs_options": [*force, "--chmod-ignore", "--chown-ignore"]},
            variant="bindfs",
        ),
        _case(
            "bindfs-create-as-user",
            alt,
            {"bindfs_options": [*force, "--create-as-user"]},
            variant="bindfs",
        ),
        _case(
            "bindfs-full",
            alt,
            {
                "nfs_options": "rw,hard,timeo=600",
                "bindfs_options": [
                    *force,
                    "--create-for-user=root",
                    "--create-for-group=root",
                    "--chown-ignore",
                    "--chmod-ignore",
                ],
            },
            variant="bindfs",
        ),
        _case("smb-basic", alt, {"options": "rw"}, variant="smb"),
        _case(
            "smb-file-mode", alt, {"options": "rw,file_mode=0755,dir_mode=0755"}, variant="smb"
        ),
        _case("smb-uid-gid", alt, {"options": "rw", "map_ids": True}, variant="smb"),
        _case("smb-noperm", alt, {"options": "rw,noperm"}, variant="smb"),
        _case("loopback-nfs", alt, variant="loopback"),
        _case("autofs", alt, variant="autofs"),
        _case("mergerfs-union", alt, variant="mergerfs"),
        _case("individual-mounts", alt, variant="individual"),
        _case("sysctl-tuned", alt, variant="sysctl"),
    ]
    return SweepPlan("alternatives", cases)


def _fixture(
    layout: NestedLayout, env: SweepEnvironment
) -> contextlib.AbstractContextManager[NestedLayout]:
    return nested_datasets(env.server, layout)


def hypothesis_plan(settings: SweepSettings) -> SweepPlan:
    """Can a client see into a child dataset through the parent's export?"""
    layout = NestedLayout.from_settings(settings)
    cases = [
        _case(
            "parent-nfs",
            CaseKind.SERVER_EXPORT,
            {"path": layout.parent_path},
            family="ZFS",
            expected_paths=layout.expected_paths,
        ),
        _case(
            "child-nfs",
            CaseKind.SERVER_EXPORT,
            {"path": layout.child_path},
            family="ZFS",
            expected_paths=(CHILD_FILE,),
        ),
        _case(
            "parent-smb",
            CaseKind.SERVER_EXPORT,
            {"path": layout.parent_path, "protocol": "smb"},
            family="ZFS",
            tier="smb",
            expected_paths=layout.expected_paths,
        ),
    ]
    return SweepPlan("hypothesis", cases, fixture=partial(_fixture, layout))


def properties_plan(settings: SweepSettings) -> SweepPlan:
    """Parent export under varying ZFS properties of parent and child."""
    layout = NestedLayout.from_settings(settings)
    parent, child = layout.parent_dataset, layout.child_dataset

    variations: list[tuple[str, dict[str, dict[str, str]]]] = [
        ("sharenfs-parent-on", {parent: {"sharenfs": "on"}}),
        ("sharenfs-both-on", {parent: {"sharenfs": "on"}, child: {"sharenfs": "on"}}),
        ("sharenfs-child-off", {parent: {"sharenfs": "on"}, child: {"sharenfs": "off"}}),
    ]
    for mode in ("restricted", "passthrough", "passthrough-x", "discard"):
        variations.append((f"aclinherit-{mode}", {parent: {"aclinherit": mode}, child: {"aclinherit": mode}}))
    for acltype in ("posix", "nfsv4"):
        variations.append((f"acltype-{acltype}", {parent: {"acltype": acltype}, child: {"acltype": acltype}}))

    cases = [
        _case(
            name,
            CaseKind.SERVER_EXPORT,
            {"path": layout.parent_path, "zfs_properties": props},  # type: ignore[dict-item]
            family="ZFS",
            expected_paths=layout.expected_paths,
        )
        for name, props in variations
    ]
    return SweepPlan("properties", cases, fixture=partial(_fixture, layout))


def real_plan(settings: SweepSettings) -> SweepPlan:
    """Service-shaped datasets exported individually and through their parent."""
    layout = NestedLayout.from_settings(settings, settings.real_datasets)
    cases: list[ConfigurationCase] = []
    for name in settings.real_datasets:
        marker = f"{name}-file.txt"
        cases.append(
            _case(
                f"individual-{name}",
                CaseKind.SERVER_EXPORT,
                {"path": layout.extra_path(name)},
                family="ZFS",
                expected_paths=(marker,),
            )
        )
        cases.append(
            _case(
                f"parent-{name}",
                CaseKind.SERVER_EXPORT,
                {"path": layout.parent_path},
                family="ZFS",
                expected_paths=(posixpath.join(f"test-{name}", marker),),
            )
        )
    return SweepPlan("real", cases, fixture=partial(_fixture, layout))


_BUILDERS: dict[str, Callable[[SweepSettings], SweepPlan]] = {
    "server": server_plan,
    "client": client_plan,
    "alternatives": alternatives_plan,
    "hypothesis": hypothesis_plan,
    "properties": properties_plan,
    "real": real_plan,
}


def build_plans(family: str, settings: SweepSettings) -> list[SweepPlan]:
    """Plans for one family, or for every family of ``all``."""
    if family == "all":
        return [_BUILDERS[name](settings) for name in ALL_ORDER]
    try:
        return [_BUILDERS[family](settings)]
    except KeyError:
        msg = f"Unknown family '{family}'. Choose from: {', '.join((*FAMILIES, 'all'))}"
        raise ConfigError(msg) from None


def iter_cases(plans: list[SweepPlan]) -> Iterator[tuple[SweepPlan, ConfigurationCase]]:
    """Every case of every plan, in run order."""
    for plan in plans:
        for case in plan.cases:
            yield plan, case
