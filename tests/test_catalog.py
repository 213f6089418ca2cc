"""Tests for the built-in plans, case models and the dataset fixture."""

import contextlib

import pytest

from mountsweep.appliers import applier_class
from mountsweep.catalog import ALL_ORDER, FAMILIES, build_plans, iter_cases
from mountsweep.config import SweepSettings
from mountsweep.errors import ApplyError, ConfigError
from mountsweep.fixtures import NestedLayout, ZfsDatasets, nested_datasets
from mountsweep.models.case import CaseKind, ConfigurationCase
from mountsweep.remote import CommandResult, LocalExecutor
from mountsweep.sweep import no_fixture


class TestConfigurationCase:
    """Tests for ConfigurationCase."""

    def test_default_families(self):
        assert ConfigurationCase(name="a", kind=CaseKind.SERVER_EXPORT).log_family == "NFS"
        assert ConfigurationCase(name="a", kind=CaseKind.CLIENT_MOUNT).log_family == "MOUNT"
        alt = ConfigurationCase(name="a", kind=CaseKind.PROTOCOL_ALTERNATIVE, variant="bindfs")
        assert alt.log_family == "BINDFS"
        assert alt.tier_name == "bindfs"

    def test_explicit_family_and_tier(self):
        c = ConfigurationCase(name="a", kind=CaseKind.SERVER_EXPORT, family="ZFS", tier="smb")

        assert c.log_family == "ZFS"
        assert c.tier_name == "smb"

    @pytest.mark.parametrize("name", ["", "  ", "a:b", "a\nb"])
    def test_bad_names(self, name):
        with pytest.raises(ValueError):
            _ = ConfigurationCase(name=name, kind=CaseKind.CLIENT_MOUNT)

    def test_params(self):
        c = ConfigurationCase(
            name="a", kind=CaseKind.CLIENT_MOUNT, parameters={"options": None, "vers": 4}
        )

        assert c.str_param("options", "rw") == "rw"
        assert c.str_param("vers") == "4"
        assert c.param("missing", "x") == "x"

    def test_frozen(self):
        c = ConfigurationCase(name="a", kind=CaseKind.CLIENT_MOUNT)

        with pytest.raises(ValueError):
            c.name = "b"

    @pytest.mark.parametrize("paths", [(), ("caddy", "caddy")])
    def test_bad_expected_paths(self, paths):
        """Test that empty or repeated expected paths are rejected on load."""
        with pytest.raises(ValueError, match="expected_paths"):
            _ = ConfigurationCase(name="a", kind=CaseKind.CLIENT_MOUNT, expected_paths=paths)


class TestCatalog:
    """Tests for the built-in plans."""

    @pytest.mark.parametrize("family", FAMILIES)
    def test_every_case_has_an_applier(self, family):
        for plan in build_plans(family, SweepSettings()):
            names = [c.name for c in plan.cases]
            assert len(names) == len(set(names))
            for case in plan.cases:
                _ = applier_class(case)

    def test_all_order(self):
        plans = build_plans("all", SweepSettings())

        assert [p.name for p in plans] == list(ALL_ORDER)

    def test_all_runs_every_family(self):
        """Test that `all` includes the ZFS families in a fixed order."""
        plans = build_plans("all", SweepSettings())

        assert [p.name for p in plans] == [
            "server",
            "client",
            "alternatives",
            "hypothesis",
            "properties",
            "real",
        ]

    def test_unknown_family(self):
        with pytest.raises(ConfigError, match="Unknown family"):
            _ = build_plans("everything", SweepSettings())

    def test_server_cases_follow_user(self):
        plan = build_plans("server", SweepSettings(remote_user="media"))[0]

        assert [c.name for c in plan.cases] == [
            "no-mapping",
            "root-mapping",
            "all-to-root",
            "map-to-media",
        ]

    def test_alternatives_tiers(self):
        plan = build_plans("alternatives", SweepSettings())[0]
        tiers = {c.name: c.tier_name for c in plan.cases}

        assert tiers["bindfs-default"] == "bindfs"
        assert tiers["smb-noperm"] == "smb"
        assert tiers["sysctl-tuned"] == "direct-nfs"

    def test_dataset_plans_have_fixtures(self):
        settings = SweepSettings()
        for family in ("hypothesis", "properties", "real"):
            plan = build_plans(family, settings)[0]
            assert plan.fixture is not no_fixture
            assert all(c.log_family == "ZFS" for c in plan.cases)
            assert all(c.expected_paths for c in plan.cases)

    def test_iter_cases(self):
        plans = build_plans("all", SweepSettings())

        pairs = list(iter_cases(plans))

        assert len(pairs) == sum(len(p.cases) for p in plans)
        assert pairs[0][0].name == "server"


class TestZfsDatasets:
    """Tests for ZfsDatasets."""

    def test_get_parses_value_and_source(self, fake_runner):
        _ = fake_runner.on("zfs get", CommandResult(0, "passthrough\tlocal\n"))
        zfs = ZfsDatasets(LocalExecutor(fake_runner, use_sudo=False))

        assert zfs.get("tank/a", "aclinherit") == ("passthrough", "local")

    def test_local_property_set_back(self, fake_runner):
        _ = fake_runner.on("zfs get", CommandResult(0, "restricted\tlocal\n"))
        zfs = ZfsDatasets(LocalExecutor(fake_runner, use_sudo=False))

        with contextlib.ExitStack() as stack:
            zfs.set_temporarily("tank/a", "aclinherit", "discard", stack)

        sets = fake_runner.commands("zfs set")
        assert sets == [
            ["zfs", "set", "aclinherit=discard", "tank/a"],
            ["zfs", "set", "aclinherit=restricted", "tank/a"],
        ]

    def test_unchanged_property_untouched(self, fake_runner):
        _ = fake_runner.on("zfs get", CommandResult(0, "on\tlocal\n"))
        zfs = ZfsDatasets(LocalExecutor(fake_runner, use_sudo=False))

        with contextlib.ExitStack() as stack:
            zfs.set_temporarily("tank/a", "sharenfs", "on", stack)

        assert not fake_runner.commands("zfs set")


class TestNestedDatasets:
    """Tests for the nested dataset fixture."""

    @pytest.fixture
    def layout(self):
        return NestedLayout("tank/docker", ("caddy",))

    def _zfs_answers(self, fake_runner, layout, exists=False):
        mountpoints = {
            layout.parent_dataset: layout.parent_path,
            layout.child_dataset: layout.child_path,
            layout.extra_dataset("caddy"): layout.extra_path("caddy"),
        }

        def answer(argv):
            if argv[1] == "list":
                return CommandResult(0 if exists else 1)
            if argv[1] == "get":
                return CommandResult(0, f"{mountpoints[argv[-1]]}\tdefault\n")
            return CommandResult(0)

        _ = fake_runner.on("zfs", answer)

    def test_layout_paths(self, layout):
        assert layout.parent_path == "/mnt/tank/docker/test-parent"
        assert layout.child_path == "/mnt/tank/docker/test-parent/test-child"
        assert layout.expected_paths == (
            "parent-file.txt",
            "test-child/child-file.txt",
            "regular-dir/regular-file.txt",
        )
        assert layout.extra_path("caddy") == "/mnt/tank/docker/test-parent/test-caddy"

    def test_created_and_destroyed(self, fake_runner, layout):
        self._zfs_answers(fake_runner, layout)
        server = LocalExecutor(fake_runner, use_sudo=False)

        with nested_datasets(server, layout) as yielded:
            assert yielded is layout
            created = [c[-1] for c in fake_runner.commands("zfs create")]
            assert created == [
                layout.parent_dataset,
                layout.child_dataset,
                layout.extra_dataset("caddy"),
            ]
            assert not fake_runner.commands("zfs destroy")

        assert fake_runner.commands("zfs destroy")[-1] == [
            "zfs", "destroy", "-r", layout.parent_dataset,
        ]
        files = [c[1] for c in fake_runner.calls if c[0] == "tee"]
        assert f"{layout.parent_path}/parent-file.txt" in files
        assert f"{layout.extra_path('caddy')}/caddy-file.txt" in files

    def test_leftover_tree_destroyed_first(self, fake_runner, layout):
        self._zfs_answers(fake_runner, layout, exists=True)
        server = LocalExecutor(fake_runner, use_sudo=False)

        with nested_datasets(server, layout):
            first_destroy = fake_runner.calls.index(
                ["zfs", "destroy", "-r", layout.parent_dataset]
            )
            first_create = fake_runner.calls.index(["zfs", "create", layout.parent_dataset])
            assert first_destroy < first_create

    def test_wrong_mountpoint(self, fake_runner, layout):
        _ = fake_runner.on("zfs get", CommandResult(0, "/elsewhere\tlocal\n"))
        _ = fake_runner.on("zfs list", CommandResult(1))
        server = LocalExecutor(fake_runner, use_sudo=False)

        with pytest.raises(ApplyError, match="mounted at /elsewhere"):
            with nested_datasets(server, layout):
                pass

    def test_create_failure(self, fake_runner, layout):
        _ = fake_runner.on("zfs create", CommandResult(1, "", "dataset already exists"))
        _ = fake_runner.on("zfs list", CommandResult(1))
        server = LocalExecutor(fake_runner, use_sudo=False)

        with pytest.raises(ApplyError, match="Cannot create test datasets"):
            with nested_datasets(server, layout):
                pass
