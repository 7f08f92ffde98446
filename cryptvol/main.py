import logging
import os
import platform
import sys
from argparse import ArgumentParser
from dataclasses import replace
from logging.handlers import SysLogHandler, TimedRotatingFileHandler

from cryptvol import __version__
from cryptvol.config import DEFAULT_HOME, Config
from cryptvol.create import Pipeline
from cryptvol.create.plan import FILESYSTEMS
from cryptvol.disk import Service
from cryptvol.disk.backend import Backend
from cryptvol.disk.cli import CLI
from cryptvol.disk.identity import IdentityResolver
from cryptvol.disk.service import Context
from cryptvol.exceptions import PreconditionError, VolumeException
from cryptvol.interaction import Interaction, get_interaction
from cryptvol.status import BaseStatus
from cryptvol.utils import safe_mkdir

LOG_DIR_NAME = "logs"
LOG_FILENAME = "cryptvol.log"
ENCODING = "utf-8"
LOGLEVEL = os.environ.get("LOGLEVEL", "debug").upper()

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_FAILURE = 2

logger = logging.getLogger(__name__)


class Status(BaseStatus):
    """
    Status values that can occur during initialization.
    """

    ERROR_LOGGING = "ERROR_LOGGING"
    ERROR_CONFIG = "ERROR_CONFIG"
    ERROR_GENERIC = "ERROR_GENERIC"


def excepthook(*exc_args):
    """
    This function is called in the event of a catastrophic failure.
    Log exception and exit cleanly.
    """
    logging.error("Unrecoverable error", exc_info=(exc_args))
    sys.stderr.write("ERROR: unexpected failure\n")
    sys.exit(EXIT_FAILURE)


def expand_to_absolute(value: str) -> str:
    """
    Expands a path to the absolute path so users can provide
    arguments in the form ``~/my/dir/``.
    """
    return os.path.abspath(os.path.expanduser(value))


def arg_parser() -> ArgumentParser:
    parser = ArgumentParser("cryptvol", description="Ad-hoc LUKS encrypted volumes")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-H",
        "--home",
        default=DEFAULT_HOME,
        type=expand_to_absolute,
        help=f"Directory for configuration and logs. (Default {DEFAULT_HOME})",
    )
    parser.add_argument(
        "-d", "--dialog", action="store_true", help="Use dialogs instead of the terminal"
    )
    parser.add_argument(
        "-s",
        "--silent",
        action="store_true",
        help="Succeed quietly if the volume is already in the requested state",
    )
    parser.add_argument(
        "-t", "--timeout", type=int, default=None, help="Passphrase prompt timeout in seconds"
    )
    parser.add_argument(
        "-a", "--attempts", type=int, default=None, help="Passphrase attempts (default 3)"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    def volume_command(name, help, aliases=()):
        sub = commands.add_parser(name, help=help, aliases=list(aliases))
        sub.add_argument("mount_dir", type=expand_to_absolute, help="Mount directory")
        sub.add_argument(
            "-i", "--image", type=expand_to_absolute, default=None, help="Image file or device"
        )
        return sub

    mount = volume_command("mount", "Open and mount a volume")
    mount.add_argument(
        "-r", "--raw", action="store_true", help="Read the passphrase from standard input"
    )

    unmount = volume_command("unmount", "Unmount and close a volume", aliases=["umount"])
    unmount.add_argument(
        "-k", "--kill", action="store_true", help="Terminate processes using the volume"
    )

    toggle = volume_command("toggle", "Mount if unmounted, otherwise unmount")
    toggle.add_argument("-r", "--raw", action="store_true")
    toggle.add_argument("-k", "--kill", action="store_true")

    volume_command("status", "Exit 0 if the volume is mounted")

    commands.add_parser("list", help="List mounted volumes")

    create = commands.add_parser("create", help="Create a new volume")
    create.add_argument("mount_dir", nargs="?", type=expand_to_absolute, default=None)
    create.add_argument("-i", "--image", type=expand_to_absolute, default=None)
    create.add_argument("--size", default=None, help="Image size, e.g. 512M or 2G")
    create.add_argument("--fs", choices=FILESYSTEMS, default=None)
    create.add_argument(
        "--format-options", default="", help="Extra options for cryptsetup luksFormat"
    )
    return parser


def configure_logging(home: str) -> None:
    """
    All logging related settings are set up by this function.
    """
    safe_mkdir(home)
    safe_mkdir(home, LOG_DIR_NAME)
    log_file = os.path.join(home, LOG_DIR_NAME, LOG_FILENAME)

    # set logging format
    log_fmt = "%(asctime)s - %(name)s:%(lineno)d(%(funcName)s) " "%(levelname)s: %(message)s"
    formatter = logging.Formatter(log_fmt)

    handler = TimedRotatingFileHandler(
        log_file, when="midnight", backupCount=5, delay=False, encoding=ENCODING
    )
    handler.setFormatter(formatter)

    # For syslog handler
    if platform.system() != "Linux":  # pragma: no cover
        syslog_file = "/var/run/syslog"
    else:
        syslog_file = "/dev/log"

    log = logging.getLogger()
    log.setLevel(LOGLEVEL)
    log.addHandler(handler)

    # syslog is optional; containers often lack /dev/log
    if os.path.exists(syslog_file):
        sysloghandler = SysLogHandler(address=syslog_file)
        sysloghandler.setFormatter(formatter)
        log.addHandler(sysloghandler)

    # override excepthook to capture a log of catastrophic failures.
    sys.excepthook = excepthook


def load_config(args) -> Config:
    config = Config.from_home_dir(args.home)
    overrides = {}
    if args.timeout is not None:
        overrides["timeout"] = args.timeout
    if args.attempts is not None:
        overrides["max_attempts"] = args.attempts
    if overrides:
        config = replace(config, **overrides)

    if config.max_attempts < 1:
        raise PreconditionError(
            f"Passphrase attempts must be at least 1, got {config.max_attempts}",
            sdstatus=Status.ERROR_CONFIG,
        )
    if config.timeout is not None and config.timeout < 0:
        raise PreconditionError(
            f"Prompt timeout can't be negative, got {config.timeout}",
            sdstatus=Status.ERROR_CONFIG,
        )
    return config


def run(args, config: Config, interaction: Interaction) -> int:
    """
    Dispatch one command. Returns the exit code; VolumeException propagates.
    """
    backend = Backend(config)
    cli = CLI(config)

    if args.command == "create":
        pipeline = Pipeline(config, interaction, backend, cli)
        pipeline.run(
            mount_dir=args.mount_dir,
            image_path=args.image,
            size=args.size,
            filesystem=args.fs,
            format_options=args.format_options.split(),
        )
        return EXIT_OK

    service = Service(config, interaction, backend, cli)
    if args.command == "list":
        for mount_point, device in service.list_mounted():
            interaction.info(f"{mount_point} {device}")
        return EXIT_OK

    volume = IdentityResolver(backend).resolve(args.mount_dir, args.image)
    if args.command == "status":
        return EXIT_OK if service.status(volume) else EXIT_USAGE

    context = Context.from_config(
        config,
        silent=args.silent,
        kill_busy=getattr(args, "kill", False),
        raw=getattr(args, "raw", False),
    )
    if context.raw and args.dialog:
        interaction.error("Reading the passphrase from standard input needs the terminal")
        return EXIT_USAGE

    if args.command == "mount":
        status = service.mount(volume, context)
    elif args.command in ("unmount", "umount"):
        status = service.unmount(volume, context)
    elif args.command == "toggle":
        status = service.toggle(volume, context)
    else:
        raise VolumeException(f"unreachable: unknown command {args.command}")

    logger.info(f"Status: {status.value}")
    return EXIT_OK


def report(interaction: Interaction, ex: VolumeException) -> None:
    message = str(ex)
    if ex.sderror:
        message = f"{message}: {ex.sderror}"
    interaction.error(message)


def entrypoint(argv=None) -> None:
    """
    Entrypoint method (Note: a method is required for setuptools).
    Configure logging, run the requested command and exit with its code.
    """
    args = arg_parser().parse_args(argv)
    os.umask(0o077)

    try:
        configure_logging(args.home)
    except Exception as ex:
        sys.stderr.write(f"ERROR: {Status.ERROR_LOGGING.value}: {ex}\n")
        sys.exit(EXIT_FAILURE)

    logger.info("Starting cryptvol {} ({})".format(__version__, args.command))
    try:
        config = load_config(args)
    except VolumeException as ex:
        logger.error(f"Encountered {ex.sdstatus.value}: {ex}")
        sys.stderr.write(f"ERROR: {ex}\n")
        sys.exit(ex.exit_code)

    interaction = get_interaction(args.dialog, config.zenity)

    try:
        code = run(args, config, interaction)
    except VolumeException as ex:
        status = ex.sdstatus.value if ex.sdstatus else Status.ERROR_GENERIC.value
        logger.error(f"Encountered {status}: {ex}")
        # status is a silent predicate
        if args.command != "status":
            report(interaction, ex)
        code = ex.exit_code
    finally:
        interaction.close_all()

    sys.exit(code)
