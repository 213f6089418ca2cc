"""Tests for configuration appliers."""

from dataclasses import replace

import pytest

from mountsweep.appliers import (
    AUTOFS_MAP_FILE,
    AUTOFS_MASTER_FILE,
    ClientMountApplier,
    applier_class,
    registered_variants,
)
from mountsweep.driver import SweepDriver
from mountsweep.errors import ApplyError, ConfigError, MountError
from mountsweep.management import NFS_NAMESPACE, SMB_NAMESPACE
from mountsweep.models.case import CaseKind, ConfigurationCase
from mountsweep.models.outcome import OutcomeStatus
from mountsweep.remote import CommandResult


class MountTable:
    """Simulates the mount table and the few tools appliers query."""

    def __init__(self):
        self.mounted: list[str] = []
        self.fail_targets: set[str] = set()
        self.files: dict[str, str] = {}
        self.sysctls: dict[str, str] = {}
        self.missing_tools: set[str] = set()

    def __call__(self, argv):
        if argv[:2] == ["sudo", "-n"]:
            argv = argv[2:]
        tool = argv[0]
        if tool == "sh" and argv[-1] in self.missing_tools:
            return CommandResult(1)
        if tool in ("mount", "bindfs", "mergerfs"):
            target = argv[-1]
            if target in self.fail_targets:
                return CommandResult(32, "", f"{tool}: access denied for {target}")
            self.mounted.append(target)
            return CommandResult(0)
        if tool == "mountpoint":
            return CommandResult(0 if argv[-1] in self.mounted else 1)
        if tool == "umount":
            if argv[-1] not in self.mounted:
                return CommandResult(32, "", "not mounted")
            self.mounted.remove(argv[-1])
            return CommandResult(0)
        if tool == "zfs" and argv[1] == "get":
            return CommandResult(0, "off\tdefault\n")
        if tool == "sysctl" and argv[1] == "-n":
            return CommandResult(0, self.sysctls.get(argv[2], "15") + "\n")
        if tool == "sysctl" and argv[1] == "-w":
            name, _, value = argv[2].partition("=")
            self.sysctls[name] = value
            return CommandResult(0)
        if tool == "id":
            return CommandResult(0, "1000\n" if argv[1] == "-u" else "100\n")
        return CommandResult(0)


@pytest.fixture
def table(fake_runner, middleware):
    mount_table = MountTable()
    _ = fake_runner.on("", mount_table)
    return mount_table


@pytest.fixture
def env(fake_env, table):
    return fake_env


def case(name, kind, variant=None, **parameters):
    return ConfigurationCase(name=name, kind=kind, variant=variant, parameters=parameters)


def applied(env, c):
    applier = applier_class(c)(env)
    return applier, applier.apply(c)


class TestRegistry:
    """Tests for the applier registry."""

    def test_lookup(self):
        assert applier_class(case("a", CaseKind.CLIENT_MOUNT)) is ClientMountApplier

    def test_unknown_variant(self):
        with pytest.raises(ConfigError, match="known variants"):
            _ = applier_class(case("a", CaseKind.PROTOCOL_ALTERNATIVE, "nope"))

    def test_variants(self):
        variants = registered_variants()
        for name in ("autofs", "bindfs", "individual", "loopback", "mergerfs", "smb", "sysctl"):
            assert name in variants


class TestClientMount:
    """Tests for ClientMountApplier."""

    def test_apply_and_revert(self, env, table, fake_runner):
        """Test the mount command and that revert unmounts once."""
        applier, handle = applied(
            env, case("nfsv3", CaseKind.CLIENT_MOUNT, options="rw,hard,vers=3")
        )

        assert handle.mount_root == "/mnt/nfs-test"
        assert fake_runner.commands("mount -t")[0] == [
            "mount", "-t", "nfs", "-o", "rw,hard,vers=3",
            "server.example:/mnt/data-tank/docker", "/mnt/nfs-test",
        ]
        assert table.mounted == ["/mnt/nfs-test"]

        applier.revert(handle)
        applier.revert(handle)

        assert table.mounted == []
        assert len(fake_runner.commands("umount")) == 1

    def test_options_list(self, env, fake_runner):
        _ = applied(env, case("list", CaseKind.CLIENT_MOUNT, options=["rw", "noac"]))

        assert "rw,noac" in fake_runner.commands("mount -t")[0]

    def test_leftover_mount_replaced(self, env, table, fake_runner):
        table.mounted.append("/mnt/nfs-test")

        _ = applied(env, case("x", CaseKind.CLIENT_MOUNT))

        assert fake_runner.commands("umount -f /mnt/nfs-test")
        assert table.mounted == ["/mnt/nfs-test"]

    def test_mount_failure(self, env, table):
        table.fail_targets.add("/mnt/nfs-test")

        with pytest.raises(MountError, match="access denied"):
            _ = applied(env, case("x", CaseKind.CLIENT_MOUNT))

    def test_mount_failure_never_probed(self, env, table, fake_runner):
        """Test that a failed mount is MOUNT_FAILED and the probe never runs."""
        table.fail_targets.add("/mnt/nfs-test")
        driver = SweepDriver(env, sleep=lambda _: None)

        record = driver.run_case(case("bad", CaseKind.CLIENT_MOUNT))

        assert record.status is OutcomeStatus.MOUNT_FAILED
        assert not fake_runner.commands("find")
        assert not fake_runner.commands("test -d /mnt/nfs-test")

    def test_probe_through_driver(self, env, fake_runner):
        """Test a full case: apply, probe with find, revert."""
        fake_runner.rules.insert(0, ("find", CommandResult(0, "f\0"), None))
        driver = SweepDriver(env, sleep=lambda _: None)

        record = driver.run_case(case("ok", CaseKind.CLIENT_MOUNT))

        assert record.status is OutcomeStatus.SUCCESS
        assert record.details == "2/2 visible"
        finds = fake_runner.commands("find")
        assert [f[1] for f in finds] == ["/mnt/nfs-test/caddy", "/mnt/nfs-test/vaultwarden"]


class TestServerExport:
    """Tests for ServerExportApplier."""

    def test_creates_and_deletes_export(self, env, middleware, table):
        applier, handle = applied(
            env,
            case("root-mapping", CaseKind.SERVER_EXPORT, maproot_user="root", maproot_group="wheel"),
        )

        share = middleware.records[NFS_NAMESPACE][0]
        assert share["path"] == "/mnt/data-tank/docker"
        assert share["maproot_user"] == "root"
        assert share["hosts"] == ["client.example"]
        assert "service.restart" in middleware.methods

        applier.revert(handle)

        assert middleware.records[NFS_NAMESPACE] == []
        assert table.mounted == []

    def test_updates_existing_export(self, env, middleware):
        """Test that an existing export is changed in place and restored."""
        existing = middleware.add(NFS_NAMESPACE, path="/mnt/data-tank/docker", mapall_user="")

        applier, handle = applied(env, case("all-to-root", CaseKind.SERVER_EXPORT, mapall_user="root"))

        assert existing["mapall_user"] == "root"

        applier.revert(handle)

        assert existing["mapall_user"] == ""
        assert len(middleware.records[NFS_NAMESPACE]) == 1

    def test_zfs_properties_restored(self, env, fake_runner):
        applier, handle = applied(
            env,
            case(
                "sharenfs",
                CaseKind.SERVER_EXPORT,
                zfs_properties={"tank/parent": {"sharenfs": "on"}},
            ),
        )

        assert fake_runner.commands("zfs set sharenfs=on tank/parent")

        applier.revert(handle)

        # Source was "default", so the property inherits again
        assert fake_runner.commands("zfs inherit sharenfs tank/parent")

    def test_failed_mount_unwinds_export(self, env, middleware, table):
        """Test that a half-applied case leaves nothing behind."""
        table.fail_targets.add("/mnt/nfs-test")

        with pytest.raises(MountError):
            _ = applied(env, case("x", CaseKind.SERVER_EXPORT, maproot_user="root"))

        assert middleware.records[NFS_NAMESPACE] == []

    def test_unknown_protocol(self, env):
        with pytest.raises(ConfigError, match="Unknown protocol"):
            _ = applied(env, case("x", CaseKind.SERVER_EXPORT, protocol="afp"))

    def test_smb_protocol(self, env, middleware, fake_runner):
        env.settings = replace(env.settings, smb_password="pw")

        applier, handle = applied(
            env, case("parent-smb", CaseKind.SERVER_EXPORT, protocol="smb", path="/mnt/tank/p")
        )

        assert middleware.records[SMB_NAMESPACE][0]["path"] == "/mnt/tank/p"
        assert middleware.records[SMB_NAMESPACE][0]["name"] == "p"
        mount = fake_runner.commands("mount -t cifs")[0]
        assert mount[-2] == "//server.example/p"

        applier.revert(handle)

        assert middleware.records[SMB_NAMESPACE] == []


class TestAlternatives:
    """Tests for the protocol alternative appliers."""

    def test_bindfs(self, env, table, fake_runner):
        alt = CaseKind.PROTOCOL_ALTERNATIVE
        applier, handle = applied(
            env, case("bindfs-default", alt, "bindfs", bindfs_options=["--no-allow-other"])
        )

        assert handle.mount_root == "/mnt/bindfs-test"
        assert fake_runner.commands("bindfs --no-allow-other")[0][-2:] == [
            "/mnt/nfs-temp",
            "/mnt/bindfs-test",
        ]
        assert table.mounted == ["/mnt/nfs-temp", "/mnt/bindfs-test"]

        applier.revert(handle)

        assert table.mounted == []

    def test_bindfs_failure_unmounts_staging(self, env, table):
        table.fail_targets.add("/mnt/bindfs-test")

        with pytest.raises(MountError, match="bindfs"):
            _ = applied(env, case("b", CaseKind.PROTOCOL_ALTERNATIVE, "bindfs"))

        assert table.mounted == []

    def test_smb_requires_password(self, env, middleware):
        """Test that a missing password fails and removes the new share."""
        with pytest.raises(ApplyError, match="password"):
            _ = applied(env, case("smb-basic", CaseKind.PROTOCOL_ALTERNATIVE, "smb"))

        assert middleware.records[SMB_NAMESPACE] == []

    def test_smb_credentials_and_ids(self, env, fake_runner, middleware):
        env.settings = replace(env.settings, smb_password="s3cret")

        applier, handle = applied(
            env, case("smb-uid-gid", CaseKind.PROTOCOL_ALTERNATIVE, "smb", options="rw", map_ids=True)
        )

        tee = fake_runner.calls.index(["tee", "/root/.smbcredentials-test"])
        assert fake_runner.inputs[tee] == "username=root\npassword=s3cret\n"
        mount = fake_runner.commands("mount -t cifs")[0]
        assert mount[mount.index("-o") + 1] == (
            "rw,uid=1000,gid=100,credentials=/root/.smbcredentials-test"
        )
        assert all("s3cret" not in " ".join(c) for c in fake_runner.calls)

        applier.revert(handle)

        assert fake_runner.commands("rm -f /root/.smbcredentials-test")

    def test_existing_smb_share_kept(self, env, middleware):
        env.settings = replace(env.settings, smb_password="pw")
        middleware.add(SMB_NAMESPACE, path="/mnt/data-tank/docker", name="docker")

        applier, handle = applied(env, case("smb-basic", CaseKind.PROTOCOL_ALTERNATIVE, "smb"))
        applier.revert(handle)

        assert len(middleware.records[SMB_NAMESPACE]) == 1

    def test_existing_smb_share_name_mounted(self, env, middleware, fake_runner):
        """Test that an existing share is mounted under its own name."""
        env.settings = replace(env.settings, smb_password="pw")
        middleware.add(SMB_NAMESPACE, path="/mnt/data-tank/docker", name="media")

        applier, handle = applied(env, case("smb-basic", CaseKind.PROTOCOL_ALTERNATIVE, "smb"))

        assert fake_runner.commands("mount -t cifs")[0][-2] == "//server.example/media"

        applier.revert(handle)

        assert middleware.records[SMB_NAMESPACE][0]["name"] == "media"

    def test_loopback(self, env, table, fake_runner):
        applier, handle = applied(env, case("loopback-nfs", CaseKind.PROTOCOL_ALTERNATIVE, "loopback"))

        assert handle.mount_root == "/mnt/nfs-loopback"
        assert table.mounted == ["/mnt/nfs-temp", "/tmp/nfs-export", "/mnt/nfs-loopback"]
        assert fake_runner.commands("mount -t nfs -o rw,hard localhost:/tmp/nfs-export")

        applier.revert(handle)

        assert table.mounted == []
        assert len(fake_runner.commands("exportfs -ra")) == 2

    def test_autofs(self, env, table, fake_runner):
        # autofs mounts on first access
        def access(argv):
            table.mounted.append(argv[-1])
            return CommandResult(0)

        fake_runner.rules.insert(0, ("ls /autofs/nfs-test", access, None))

        applier, handle = applied(env, case("autofs", CaseKind.PROTOCOL_ALTERNATIVE, "autofs"))

        assert handle.mount_root == "/autofs/nfs-test"
        assert fake_runner.commands(f"tee {AUTOFS_MASTER_FILE}")
        map_call = fake_runner.calls.index(["tee", AUTOFS_MAP_FILE])
        assert "server.example:/mnt/data-tank/docker" in fake_runner.inputs[map_call]

        applier.revert(handle)

        assert fake_runner.commands(f"rm -f {AUTOFS_MAP_FILE}")

    def test_autofs_not_triggered(self, env):
        with pytest.raises(MountError, match="autofs did not mount"):
            _ = applied(env, case("autofs", CaseKind.PROTOCOL_ALTERNATIVE, "autofs"))

    def test_mergerfs(self, env, table):
        applier, handle = applied(env, case("mergerfs-union", CaseKind.PROTOCOL_ALTERNATIVE, "mergerfs"))

        assert table.mounted == ["/mnt/nfs-temp", "/mnt/unionfs-test"]

        applier.revert(handle)

        assert table.mounted == []

    def test_missing_tool_fails_the_case(self, env, table):
        """Test that a missing variant tool is an ApplyError before any mount."""
        table.missing_tools.add("mergerfs")

        with pytest.raises(ApplyError, match="mergerfs not installed"):
            _ = applied(env, case("mergerfs-union", CaseKind.PROTOCOL_ALTERNATIVE, "mergerfs"))

        assert table.mounted == []

    def test_missing_tool_recorded_as_error(self, env, table):
        table.missing_tools.add("bindfs")
        driver = SweepDriver(env, sleep=lambda _: None)

        record = driver.run_case(case("bindfs-default", CaseKind.PROTOCOL_ALTERNATIVE, "bindfs"))

        assert record.status is OutcomeStatus.ERROR
        assert "bindfs not installed" in record.details
        assert table.mounted == []

    def test_individual_skips_failures(self, env, table):
        """Test that one failing directory does not fail the case."""
        table.fail_targets.add("/mnt/nfs-individual/vaultwarden")

        applier, handle = applied(
            env, case("individual-mounts", CaseKind.PROTOCOL_ALTERNATIVE, "individual")
        )

        assert handle.mount_root == "/mnt/nfs-individual"
        assert table.mounted == ["/mnt/nfs-individual/caddy"]

        applier.revert(handle)

        assert table.mounted == []

    def test_individual_all_fail(self, env, table):
        table.fail_targets.update(
            {"/mnt/nfs-individual/caddy", "/mnt/nfs-individual/vaultwarden"}
        )

        with pytest.raises(MountError, match="None of 2"):
            _ = applied(env, case("i", CaseKind.PROTOCOL_ALTERNATIVE, "individual"))

    def test_sysctl_restored(self, env, table):
        table.sysctls["fs.nfs.nlm_timeout"] = "10"

        applier, handle = applied(
            env,
            case("sysctl-tuned", CaseKind.PROTOCOL_ALTERNATIVE, "sysctl",
                 sysctls={"fs.nfs.nlm_timeout": 30}),
        )

        assert table.sysctls["fs.nfs.nlm_timeout"] == "30"

        applier.revert(handle)

        assert table.sysctls["fs.nfs.nlm_timeout"] == "10"

    def test_sysctl_tier(self):
        c = case("sysctl-tuned", CaseKind.PROTOCOL_ALTERNATIVE, "sysctl")

        assert c.tier_name == "direct-nfs"
        assert c.log_family == "SYSCTL"
