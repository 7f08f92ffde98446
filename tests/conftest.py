import pytest

from cryptvol.disk.busy import BusyResolver
from cryptvol.disk.service import Context, Service
from cryptvol.disk.volume import Volume

from .fakes import TEST_CONFIG, FakeBackend, FakeCLI, FakeSystem, ScriptedInteraction

PASSPHRASE = "correct horse battery staple"


@pytest.fixture(scope="function")
def system():
    return FakeSystem()


@pytest.fixture(scope="function")
def volume(tmp_path, system):
    """
    Setup: a mount directory and a LUKS image (passphrase PASSPHRASE) next to it.
    """
    mount_dir = tmp_path / "secret"
    mount_dir.mkdir()
    image = tmp_path / ".secretfs"
    image.write_bytes(b"\0" * 16)
    system.add_image(str(image), PASSPHRASE.encode("utf-8"))
    return Volume(str(image), str(mount_dir))


@pytest.fixture(scope="function")
def make_service(system):
    def _make(answers=None, confirms=None):
        interaction = ScriptedInteraction(answers, confirms)
        cli = FakeCLI(system)
        service = Service(
            TEST_CONFIG,
            interaction,
            backend=FakeBackend(system),
            cli=cli,
            busy=BusyResolver(cli, TEST_CONFIG, sleep=lambda _: None),
        )
        return service

    return _make


@pytest.fixture(scope="function")
def context():
    return Context.from_config(TEST_CONFIG)


def fresh(volume: Volume) -> Volume:
    """
    Volumes are recomputed per command; mimic that between calls.
    """
    return Volume(volume.image_path, volume.mount_point)
