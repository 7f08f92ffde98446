import pytest

from cryptvol.disk.identity import mapper_name_for
from cryptvol.disk.service import Context
from cryptvol.disk.status import Status
from cryptvol.disk.volume import DEVMAPPER_DIR, MountInfo
from cryptvol.exceptions import (
    BackendError,
    BusyError,
    IdentityError,
    MountError,
    PreconditionError,
    SecretAbort,
    SecretExhausted,
)

from ..conftest import PASSPHRASE, fresh
from ..fakes import TEST_CONFIG


def _uuid(system, volume):
    return system.images[volume.image_path]["uuid"]


class TestMount:
    def test_mount_success(self, system, volume, make_service, context):
        service = make_service(answers=[PASSPHRASE])

        status = service.mount(volume, context)

        assert status == Status.MOUNTED
        name = mapper_name_for(_uuid(system, volume))
        assert system.mappings == {name: volume.image_path}
        assert system.mounts[volume.mount_point].source == DEVMAPPER_DIR + name

    def test_mount_then_status_round_trip(self, volume, make_service, context):
        service = make_service(answers=[PASSPHRASE])
        assert not service.status(fresh(volume))

        service.mount(fresh(volume), context)
        assert service.status(fresh(volume))

        service.unmount(fresh(volume), context)
        assert not service.status(fresh(volume))

    def test_mount_missing_dir(self, tmp_path, system, make_service, context):
        from cryptvol.disk.volume import Volume

        service = make_service()
        volume = Volume(str(tmp_path / ".nopefs"), str(tmp_path / "nope"))

        with pytest.raises(PreconditionError) as ex:
            service.mount(volume, context)

        assert ex.value.sdstatus == Status.MOUNT_DIR_MISSING
        assert ex.value.exit_code == 1
        assert system.calls == []

    def test_mount_already_mounted(self, system, volume, make_service, context):
        service = make_service(answers=[PASSPHRASE])
        service.mount(fresh(volume), context)

        with pytest.raises(PreconditionError) as ex:
            service.mount(fresh(volume), context)
        assert ex.value.sdstatus == Status.ALREADY_MOUNTED

    def test_mount_idempotent_when_silent(self, system, volume, make_service):
        service = make_service(answers=[PASSPHRASE])
        context = Context.from_config(TEST_CONFIG, silent=True)

        assert service.mount(fresh(volume), context) == Status.MOUNTED
        assert service.mount(fresh(volume), context) == Status.ALREADY_MOUNTED

        assert len(system.mappings) == 1
        assert len([c for c in system.calls if c[0] == "open"]) == 1

    def test_mount_image_missing(self, tmp_path, volume, make_service, context):
        service = make_service()
        volume.image_path = str(tmp_path / ".otherfs")

        with pytest.raises(PreconditionError) as ex:
            service.mount(volume, context)
        assert ex.value.sdstatus == Status.IMAGE_MISSING

    def test_mount_not_luks(self, tmp_path, system, volume, make_service, context):
        plain = tmp_path / "plain.img"
        plain.write_bytes(b"")
        volume.image_path = str(plain)
        service = make_service()

        with pytest.raises(IdentityError) as ex:
            service.mount(volume, context)
        assert ex.value.sdstatus == Status.NO_UUID

    def test_mount_mapping_collision(self, system, volume, make_service, context):
        name = mapper_name_for(_uuid(system, volume))
        system.mappings[name] = "/somewhere/else"
        service = make_service(answers=[PASSPHRASE])

        with pytest.raises(IdentityError) as ex:
            service.mount(volume, context)

        assert ex.value.sdstatus == Status.MAPPING_COLLISION
        assert system.mappings == {name: "/somewhere/else"}
        assert not [c for c in system.calls if c[0] == "open"]

    def test_mount_aborted_prompt(self, system, volume, make_service, context):
        service = make_service(answers=[None])

        with pytest.raises(SecretAbort) as ex:
            service.mount(volume, context)

        assert ex.value.sdstatus == Status.ABORTED
        assert not [c for c in system.calls if c[0] == "open"]
        assert system.mappings == {}

    def test_mount_wrong_passphrase_exhausted(self, system, volume, make_service, context):
        service = make_service(answers=["wrong", "also wrong", "still wrong"])

        with pytest.raises(SecretExhausted) as ex:
            service.mount(volume, context)

        assert ex.value.sdstatus == Status.OPEN_FAILED
        assert len([c for c in system.calls if c[0] == "open"]) == 3
        assert system.mappings == {}
        assert system.mounts == {}

    def test_mount_failure_rolls_back_mapping(self, system, volume, make_service, context):
        system.fail_mount = "wrong fs type, bad option, bad superblock"
        service = make_service(answers=[PASSPHRASE])

        with pytest.raises(MountError) as ex:
            service.mount(volume, context)

        assert ex.value.sdstatus == Status.MOUNT_FAILED
        assert ex.value.exit_code == 2
        assert ex.value.sderror == "wrong fs type, bad option, bad superblock"
        assert system.mappings == {}
        assert system.calls[-1][0] == "close"

    def test_mount_failure_rollback_close_fails(self, system, volume, make_service, context):
        system.fail_mount = "mount failed"
        system.fail_close = "device busy"
        service = make_service(answers=[PASSPHRASE])

        with pytest.raises(MountError) as ex:
            service.mount(volume, context)

        assert "mount failed" in ex.value.sderror
        assert "device busy" in ex.value.sderror

    def test_mount_raw_input(self, system, volume, make_service):
        system.raw_input = PASSPHRASE.encode("utf-8")
        service = make_service()
        context = Context.from_config(TEST_CONFIG, raw=True)

        assert service.mount(volume, context) == Status.MOUNTED
        assert service.interaction.prompts == []

    def test_mount_raw_input_wrong_is_not_retried(self, system, volume, make_service):
        system.raw_input = b"nope"
        service = make_service()
        context = Context.from_config(TEST_CONFIG, raw=True)

        with pytest.raises(BackendError) as ex:
            service.mount(volume, context)

        assert ex.value.sdstatus == Status.OPEN_FAILED
        assert len([c for c in system.calls if c[0] == "open"]) == 1


class TestMountOptions:
    def test_default_options(self, make_service, context):
        assert make_service().mount_options_for("ext4", context) == ["nodev", "nosuid", "noatime"]

    def test_ext2_sync(self, make_service, context):
        assert make_service().mount_options_for("ext2", context)[-1] == "sync"

    def test_vfat_owner(self, mocker, make_service, context):
        mocker.patch("os.getuid", return_value=1000)
        mocker.patch("os.getgid", return_value=1001)

        options = make_service().mount_options_for("vfat", context)

        assert options[-3:] == ["uid=1000", "gid=1001", "umask=077"]

    def test_vfat_options_reach_mount(self, system, volume, make_service, context):
        system.images[volume.image_path]["fs"] = "vfat"
        service = make_service(answers=[PASSPHRASE])

        service.mount(volume, context)

        mount_call = [c for c in system.calls if c[0] == "mount"][0]
        assert "umask=077" in mount_call[3]


class TestUnmount:
    def test_unmount_not_mounted(self, system, volume, make_service, context):
        service = make_service()

        with pytest.raises(PreconditionError) as ex:
            service.unmount(volume, context)

        assert ex.value.sdstatus == Status.NOT_MOUNTED
        assert ex.value.exit_code == 1
        # Nothing but the mount table probe
        assert system.calls == [("probe", volume.mount_point)]

    def test_unmount_not_mounted_silent(self, volume, make_service):
        service = make_service()
        context = Context.from_config(TEST_CONFIG, silent=True)

        assert service.unmount(volume, context) == Status.NOT_MOUNTED

    def test_unmount_foreign_device(self, system, volume, make_service, context):
        system.mounts[volume.mount_point] = MountInfo("/dev/sdb1", "ext4")
        service = make_service()

        with pytest.raises(PreconditionError) as ex:
            service.unmount(volume, context)
        assert ex.value.sdstatus == Status.NOT_MOUNTED

    def test_unmount_uses_live_mount_table(self, system, volume, make_service, context):
        # Mounted under a name that isn't derived from this image
        other = "luks-00000000-0000-4000-8000-000000000000"
        system.mappings[other] = volume.image_path
        system.mounts[volume.mount_point] = MountInfo(DEVMAPPER_DIR + other, "ext4")
        service = make_service()

        assert service.unmount(volume, context) == Status.UNMOUNTED
        assert ("close", other) in system.calls
        assert system.mappings == {}

    def test_unmount_busy(self, system, volume, make_service, context):
        service = make_service(answers=[PASSPHRASE])
        service.mount(fresh(volume), context)
        system.busy.add(volume.mount_point)

        with pytest.raises(BusyError) as ex:
            service.unmount(fresh(volume), context)

        assert ex.value.sdstatus == Status.BUSY
        assert not [c for c in system.calls if c[0] == "unmount"]
        assert service.status(fresh(volume))

    def test_unmount_busy_kill_fails(self, system, volume, make_service):
        service = make_service(answers=[PASSPHRASE])
        context = Context.from_config(TEST_CONFIG, kill_busy=True)
        service.mount(fresh(volume), context)
        system.busy.add(volume.mount_point)

        with pytest.raises(BusyError) as ex:
            service.unmount(fresh(volume), context)

        assert ex.value.sdstatus == Status.EVICTION_FAILED
        assert len([c for c in system.calls if c[0] == "kill"]) == TEST_CONFIG.evict_rounds
        assert not [c for c in system.calls if c[0] == "unmount"]

    def test_unmount_busy_kill_succeeds(self, system, volume, make_service, mocker):
        service = make_service(answers=[PASSPHRASE])
        context = Context.from_config(TEST_CONFIG, kill_busy=True)
        service.mount(fresh(volume), context)
        system.busy.add(volume.mount_point)
        mocker.patch.object(
            service.cli, "kill_holders", side_effect=lambda p: system.busy.discard(p)
        )

        assert service.unmount(fresh(volume), context) == Status.UNMOUNTED

    def test_unmount_failure_keeps_mapping(self, system, volume, make_service, context, mocker):
        service = make_service(answers=[PASSPHRASE])
        service.mount(fresh(volume), context)
        mocker.patch.object(
            service.cli,
            "unmount",
            side_effect=MountError(sdstatus=Status.UNMOUNT_FAILED, sderror="target is busy."),
        )

        with pytest.raises(MountError) as ex:
            service.unmount(fresh(volume), context)

        assert ex.value.sdstatus == Status.UNMOUNT_FAILED
        assert len(system.mappings) == 1
        assert not [c for c in system.calls if c[0] == "close"]

    def test_unmount_close_failure(self, system, volume, make_service, context):
        service = make_service(answers=[PASSPHRASE])
        service.mount(fresh(volume), context)
        system.fail_close = "Device luks-... is still in use."

        with pytest.raises(BackendError) as ex:
            service.unmount(fresh(volume), context)

        assert ex.value.sdstatus == Status.CLOSE_FAILED
        assert ex.value.exit_code == 2
        assert system.mounts == {}
        assert len(system.mappings) == 1


class TestToggleAndList:
    def test_toggle(self, system, volume, make_service, context):
        service = make_service(answers=[PASSPHRASE])

        assert service.toggle(fresh(volume), context) == Status.MOUNTED
        assert service.toggle(fresh(volume), context) == Status.UNMOUNTED
        assert system.mappings == {}

    def test_list_mounted(self, system, volume, make_service, context):
        service = make_service(answers=[PASSPHRASE])
        service.mount(fresh(volume), context)
        system.mounts["/mnt/usb"] = MountInfo("/dev/sdb1", "vfat")

        mounted = service.list_mounted()

        assert mounted == [(volume.mount_point, system.mounts[volume.mount_point].source)]

    def test_status_missing_dir(self, tmp_path, make_service):
        from cryptvol.disk.volume import Volume

        assert not make_service().status(Volume("/x", str(tmp_path / "gone")))
