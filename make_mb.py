# /// script
# requires-python = ">=3.8"
# dependencies = [
#     "genutility[rich]",
#     "rich",
# ]
# ///
import errno
import logging
import os
import re
import sys
from argparse import ArgumentDefaultsHelpFormatter, ArgumentParser, RawDescriptionHelpFormatter
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, NamedTuple, Optional, Sequence, Union

from genutility.rand import randbytes
from genutility.rich import Progress
from rich.console import Console
from rich.highlighter import NullHighlighter
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn
from rich.progress import Progress as RichProgress
from rich.progress import TextColumn, TimeElapsedColumn

__version__ = "0.1"

logger = logging.getLogger(__name__)

MiB = 1024**2
DEFAULT_CHUNK_SIZE = MiB
DEFAULT_MODE = "text"
MODES = ("text", "zero", "random")
TEXT_LINE = b"Lorem ipsum dolor sit amet, consectetur adipiscing elit. 0123456789 ABCDEFGHIJKLMNOPQRSTUVWXYZ.\n"

# errno values which mean the allocation call exists but cannot be used here
UNSUPPORTED_ERRNOS = {errno.EOPNOTSUPP, errno.ENOTSUP, errno.ENOSYS, errno.EINVAL}

ChunkFunc = Callable[[int], Union[bytes, memoryview]]


class MakeMbError(Exception):
    pass


class InvalidInput(MakeMbError, ValueError):
    pass


class UnsupportedMode(MakeMbError, ValueError):
    pass


class IOFailure(MakeMbError, OSError):
    pass


class Unavailable(Exception):
    """Raised by a zero allocation method which cannot be used on this platform or filesystem."""


def parse_size_units(value: Optional[str]) -> int:
    """Parses a size in MiB as given on the command line. Only plain decimal digits are accepted."""

    if value is None or value == "":
        raise InvalidInput("SIZE_MB is required")

    if not re.fullmatch(r"[0-9]+", value, re.ASCII):
        raise InvalidInput(f"SIZE_MB must be a non-negative integer, got `{value}`")

    return int(value)


def target_bytes(size_units: int) -> int:
    if isinstance(size_units, bool) or not isinstance(size_units, int):
        raise InvalidInput(f"SIZE_MB must be an integer, got {type(size_units).__name__}")

    if size_units < 0:
        raise InvalidInput(f"SIZE_MB must be non-negative, got {size_units}")

    return size_units * MiB


def default_path(size_units: int) -> Path:
    return Path(f"sample_{size_units}MB")


@dataclass(frozen=True)
class GenerationRequest:
    size_units: int
    path: Path
    mode: str = DEFAULT_MODE

    @classmethod
    def create(
        cls, size_units: int, path: Optional[Union[str, Path]] = None, mode: Optional[str] = None
    ) -> "GenerationRequest":
        """Validates the input and fills in the default output path and mode."""

        target_bytes(size_units)

        if mode is None:
            mode = DEFAULT_MODE
        elif mode not in MODES:
            raise UnsupportedMode(f"--mode must be one of {'|'.join(MODES)}, got `{mode}`")

        if path is None:
            path = default_path(size_units)

        return cls(size_units, Path(path), mode)

    @property
    def target_bytes(self) -> int:
        return target_bytes(self.size_units)


# streaming


def iter_chunk_sizes(total: int, chunk_size: int) -> Iterator[int]:
    remaining = total
    while remaining > 0:
        size = min(chunk_size, remaining)
        yield size
        remaining -= size


def zero_chunks(chunk_size: int) -> ChunkFunc:
    view = memoryview(bytes(chunk_size))

    def getchunk(size: int) -> memoryview:
        return view[:size]

    return getchunk


def text_chunks(chunk_size: int, line: bytes = TEXT_LINE) -> ChunkFunc:
    # chunks must be whole lines so the text continues across chunk boundaries
    view = memoryview(line * max(1, chunk_size // len(line)))

    def getchunk(size: int) -> memoryview:
        return view[:size]

    return getchunk


def text_chunk_size(chunk_size: int, line: bytes = TEXT_LINE) -> int:
    return len(line) * max(1, chunk_size // len(line))


def sync(fw: BinaryIO) -> None:
    fw.flush()
    os.fsync(fw.fileno())


def write_stream(
    fw: BinaryIO,
    total: int,
    chunk_size: int,
    getchunk: ChunkFunc,
    progress: Optional[Progress] = None,
    description: str = "Writing",
) -> int:
    """Writes `total` bytes to `fw` in chunks of at most `chunk_size` bytes and syncs the file to disk.
    The last chunk is cut so that exactly `total` bytes are written.
    """

    if chunk_size <= 0:
        raise InvalidInput(f"chunk size must be positive, got {chunk_size}")

    sizes = iter_chunk_sizes(total, chunk_size)
    if progress is not None:
        sizes = progress.track(sizes, total=-(-total // chunk_size), description=description)

    written = 0
    for size in sizes:
        written += fw.write(getchunk(size))

    sync(fw)
    return written


# zero allocation methods


def _allocate_fallocate(fw: BinaryIO, total: int, chunk_size: int, progress: Optional[Progress]) -> None:
    if total == 0:
        raise Unavailable("posix_fallocate cannot allocate zero bytes")

    try:
        os.posix_fallocate(fw.fileno(), 0, total)
    except OSError as e:
        if e.errno in UNSUPPORTED_ERRNOS:
            raise Unavailable(str(e)) from e
        raise


def _allocate_truncate(fw: BinaryIO, total: int, chunk_size: int, progress: Optional[Progress]) -> None:
    try:
        fw.truncate(total)
    except OSError as e:
        if e.errno in UNSUPPORTED_ERRNOS:
            raise Unavailable(str(e)) from e
        raise


def _allocate_stream(fw: BinaryIO, total: int, chunk_size: int, progress: Optional[Progress]) -> None:
    write_stream(fw, total, chunk_size, zero_chunks(chunk_size), progress, "Writing zeros")


class ZeroMethod(NamedTuple):
    name: str
    available: Callable[[], bool]
    allocate: Callable[[BinaryIO, int, int, Optional[Progress]], None]


ZERO_METHODS: Dict[str, ZeroMethod] = {
    m.name: m
    for m in (
        ZeroMethod("fallocate", lambda: hasattr(os, "posix_fallocate"), _allocate_fallocate),
        ZeroMethod("truncate", lambda: True, _allocate_truncate),
        ZeroMethod("stream", lambda: True, _allocate_stream),
    )
}


def write_zero(
    fw: BinaryIO,
    total: int,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    progress: Optional[Progress] = None,
    methods: Optional[Sequence[str]] = None,
) -> str:
    """Fills `fw` with `total` zero bytes using the first of `methods` which works here.
    Returns the name of the method used.
    """

    if methods is None:
        methods = list(ZERO_METHODS)

    if not methods:
        raise InvalidInput("At least one zero method is required")

    for name in methods:
        try:
            method = ZERO_METHODS[name]
        except KeyError:
            raise InvalidInput(f"Invalid zero method: {name}")

        if not method.available():
            logger.debug("Zero method `%s` is not available on this platform", name)
            continue

        try:
            method.allocate(fw, total, chunk_size, progress)
        except Unavailable as e:
            logger.debug("Zero method `%s` cannot be used: %s", name, e)
            fw.seek(0)
            fw.truncate(0)
            continue

        return name

    raise IOFailure(f"None of the zero methods could be used: {', '.join(methods)}")


def write_random(
    fw: BinaryIO, total: int, chunk_size: int = DEFAULT_CHUNK_SIZE, progress: Optional[Progress] = None
) -> str:
    write_stream(fw, total, chunk_size, randbytes, progress, "Writing random bytes")
    return "stream"


def fix_size(fw: BinaryIO, total: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """Pads the file with zero bytes or cuts it so that it is exactly `total` bytes long.
    Returns the size before the fix.
    """

    fw.flush()
    actual = os.fstat(fw.fileno()).st_size

    if actual < total:
        logger.debug("Padding %d zero bytes", total - actual)
        fw.seek(actual)
        write_stream(fw, total - actual, chunk_size, zero_chunks(chunk_size))
    elif actual > total:
        logger.debug("Truncating %d bytes", actual - total)
        fw.truncate(total)
        sync(fw)

    fixed = os.fstat(fw.fileno()).st_size
    if fixed != total:
        raise IOFailure(f"File size is {fixed} bytes after fixup, expected {total}")

    return actual


def write_text(
    fw: BinaryIO, total: int, chunk_size: int = DEFAULT_CHUNK_SIZE, progress: Optional[Progress] = None
) -> str:
    size = text_chunk_size(chunk_size)
    write_stream(fw, total, size, text_chunks(chunk_size), progress, "Writing text")
    fix_size(fw, total, chunk_size)
    return "text"


Generator = Callable[[BinaryIO, int, int, Optional[Progress]], str]

GENERATORS: Dict[str, Generator] = {
    "text": write_text,
    "zero": write_zero,
    "random": write_random,
}


def get_generator(mode: str, zero_methods: Optional[Sequence[str]] = None) -> Generator:
    try:
        generator = GENERATORS[mode]
    except KeyError:
        raise UnsupportedMode(f"--mode must be one of {'|'.join(MODES)}, got `{mode}`")

    if mode == "zero" and zero_methods is not None:
        if not zero_methods:
            raise InvalidInput("At least one zero method is required")
        for name in zero_methods:
            if name not in ZERO_METHODS:
                raise InvalidInput(f"Invalid zero method: {name}")
        return partial(write_zero, methods=zero_methods)

    return generator


def generate(
    request: GenerationRequest,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    zero_methods: Optional[Sequence[str]] = None,
    progress: Optional[Progress] = None,
) -> str:
    """Creates (or overwrites) the file described by `request`. Returns the name of the method used."""

    generator = get_generator(request.mode, zero_methods)
    total = request.target_bytes

    if chunk_size <= 0:
        raise InvalidInput(f"chunk size must be positive, got {chunk_size}")

    try:
        with open(request.path, "wb") as fw:
            return generator(fw, total, chunk_size, progress)
    except IOFailure:
        raise
    except OSError as e:
        if e.filename:
            raise IOFailure(f"Writing failed: {e}") from e
        else:
            raise IOFailure(f"Writing `{request.path}` failed: {e}") from e


def make_file(
    size_units: int,
    path: Optional[Union[str, Path]] = None,
    mode: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    zero_methods: Optional[Sequence[str]] = None,
    progress: Optional[Progress] = None,
) -> str:
    request = GenerationRequest.create(size_units, path, mode)
    return generate(request, chunk_size, zero_methods, progress)


EPILOG = """examples:
  make-mb 50 big.txt                # ~50 MiB of readable text (default)
  make-mb 10 bin.zero --mode zero   # ~10 MiB of zeros
  make-mb 5 bin.rand --mode random  # ~5 MiB of random data

modes:
  text    readable lorem ipsum text (good for HTTP / parsing tests)
  zero    zero bytes (fastest)
  random  random bytes (slower, good for entropy tests)
"""


class HelpFormatter(ArgumentDefaultsHelpFormatter, RawDescriptionHelpFormatter):
    pass


def get_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="make-mb",
        description="Create a file of SIZE_MB MiB (1 MiB = 1,048,576 bytes) filled with text, zeros or random bytes.",
        epilog=EPILOG,
        formatter_class=HelpFormatter,
    )
    parser.add_argument("size", metavar="SIZE_MB", help="File size in MiB")
    parser.add_argument(
        "out", metavar="OUTPUT", nargs="?", type=Path, default=None, help="Output path. Default: sample_<SIZE_MB>MB"
    )
    parser.add_argument("--mode", default=DEFAULT_MODE, help=f"Content of the file: {'|'.join(MODES)}")
    parser.add_argument(
        "--zero-method",
        metavar="METHOD",
        nargs="+",
        choices=list(ZERO_METHODS),
        default=list(ZERO_METHODS),
        help="Allocation methods to try in order for --mode zero",
    )
    parser.add_argument(
        "--chunk-size", metavar="BYTES", type=int, default=DEFAULT_CHUNK_SIZE, help="Chunk size for one write call"
    )
    parser.add_argument("-p", "--progress", action="store_true", help="Show progress bar")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output")
    parser.add_argument("--version", action="version", version=__version__)
    return parser


def setup_logging(verbose: bool = False) -> None:
    handler = RichHandler(
        console=Console(stderr=True), log_time_format="%Y-%m-%d %H-%M-%S%Z", highlighter=NullHighlighter()
    )
    FORMAT = "%(message)s"

    if verbose:
        logging.basicConfig(level=logging.DEBUG, format=FORMAT, handlers=[handler])
    else:
        logging.basicConfig(level=logging.INFO, format=FORMAT, handlers=[handler])


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = get_parser()

    if argv is None:
        argv = sys.argv[1:]

    if not argv:
        parser.print_help()
        return 0

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        size_units = parse_size_units(args.size)
        request = GenerationRequest.create(size_units, args.out, args.mode)
    except (InvalidInput, UnsupportedMode) as e:
        parser.error(str(e))

    if args.chunk_size <= 0:
        parser.error("--chunk-size must be positive")

    logger.info("Creating ~%d MiB -> %s (mode: %s)", request.size_units, request.path, request.mode)

    columns = [
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
    ]

    try:
        with RichProgress(*columns, disable=not args.progress) as progress:
            p = Progress(progress)
            method = generate(request, args.chunk_size, args.zero_method, p)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user. `%s` may be incomplete.", request.path)
        return 130
    except IOFailure as e:
        logger.error("%s", e)
        return 1

    logger.info("Done (%s). Size: %d bytes", method, request.path.stat().st_size)
    return 0


def cli() -> None:
    try:
        sys.exit(main())
    except Exception:
        logger.exception("Creating file failed. Exiting.")
        sys.exit(1)


if __name__ == "__main__":
    cli()
