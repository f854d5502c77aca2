"""Reading another process's heap memory on macOS through lldb."""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import threading
import time
from typing import Iterator, Optional

from .vmmap import MemRegion, get_vmmap, mem_regions_filter

logger = logging.getLogger(__name__)

MAX_WORKERS = 8
MIN_CHUNK_SIZE = 4 * 1024 * 1024
CHUNK_OVERLAP_BYTES = 1024  # larger than every key offset
CHUNK_MULTIPLIER = 2

_READ_TIMEOUT = 30.0
_ATTACH_WAIT = 2.0
_DETACH_WAIT = 0.2
_EXIT_TIMEOUT = 10.0


def split_region(memory: bytes) -> Iterator[bytes]:
    """Yield a region in overlapping chunks, from its end to its start.

    Regions up to ``MIN_CHUNK_SIZE`` come out whole.  Every chunk but the
    first one of the region reaches ``CHUNK_OVERLAP_BYTES`` back into its
    predecessor so that patterns on a boundary are not lost.
    """
    total = len(memory)
    if total <= MIN_CHUNK_SIZE:
        yield memory
        return

    chunk_count = MAX_WORKERS * CHUNK_MULTIPLIER
    chunk_size = total // chunk_count
    if chunk_size < MIN_CHUNK_SIZE:
        chunk_count = max(total // MIN_CHUNK_SIZE, 1)
        chunk_size = total // chunk_count

    for i in reversed(range(chunk_count)):
        start = i * chunk_size
        end = total if i == chunk_count - 1 else (i + 1) * chunk_size
        if i > 0:
            start = max(start - CHUNK_OVERLAP_BYTES, 0)
        logger.debug(
            "memory chunk %d/%d, size %d, offsets %X-%X",
            i + 1,
            chunk_count,
            end - start,
            start,
            end,
        )
        yield memory[start:end]


def _make_pipe_path(suffix: str = "") -> str:
    return os.path.join(
        tempfile.gettempdir(), f"chatlog_pipe_{time.time_ns()}{suffix}"
    )


def _make_fifo(path: str) -> None:
    try:
        os.mkfifo(path, 0o600)
    except (OSError, AttributeError) as exc:
        raise RuntimeError(f"create pipe file failed: {exc}") from exc


def _release_reader(path: str) -> None:
    """Unblock a reader still waiting for a writer to open ``path``."""
    try:
        fd = os.open(path, os.O_WRONLY | os.O_NONBLOCK)
    except OSError:
        return
    os.close(fd)


class _PipeReader(threading.Thread):
    """Reads everything written to a named pipe, then removes it."""

    def __init__(self, path: str, remove: bool) -> None:
        super().__init__(daemon=True)
        self.path = path
        self.remove = remove
        self.data: Optional[bytes] = None
        self.error: Optional[OSError] = None

    def run(self) -> None:
        try:
            with open(self.path, "rb") as fifo:
                self.data = fifo.read()
        except OSError as exc:
            self.error = exc
        finally:
            if self.remove:
                try:
                    os.remove(self.path)
                except OSError:
                    pass


class Glance:
    """Reads the heap regions of one process."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.mem_regions: list[MemRegion] = []
        self.pipe_path = _make_pipe_path()
        self.data: Optional[bytes] = None

    def _load_regions(self) -> list[MemRegion]:
        self.mem_regions = mem_regions_filter(get_vmmap(self.pid))
        if not self.mem_regions:
            raise RuntimeError("no memory regions found")
        return self.mem_regions

    def read(self) -> bytes:
        """Read the first heap region in one lldb run; the result is cached."""
        if self.data is not None:
            return self.data

        region = self._load_regions()[0]
        _make_fifo(self.pipe_path)
        try:
            reader = _PipeReader(self.pipe_path, remove=False)
            reader.start()

            size = region.end - region.start
            command = (
                f"memory read --binary --force --outfile {self.pipe_path} "
                f"--count {size} 0x{region.start:x}"
            )
            try:
                proc = subprocess.Popen(
                    ["lldb", "-p", str(self.pid), "-o", command, "-o", "quit"],
                    stdout=subprocess.DEVNULL,
                )
            except OSError as exc:
                _release_reader(self.pipe_path)
                raise RuntimeError(f"run command failed: {exc}") from exc

            reader.join(_READ_TIMEOUT)
            if reader.is_alive():
                proc.kill()
                proc.wait()
                _release_reader(self.pipe_path)
                raise TimeoutError("read memory timeout")
            if reader.error is not None:
                proc.kill()
                proc.wait()
                raise RuntimeError(
                    f"read memory failed: open pipe file failed: {reader.error}"
                )
            self.data = reader.data or b""

            if proc.wait() != 0:
                logger.error("lldb process exited with code %s", proc.returncode)
        finally:
            try:
                os.remove(self.pipe_path)
            except OSError:
                pass
        return self.data

    def iter_memory(self, cancel: Optional[threading.Event] = None) -> Iterator[bytes]:
        """Yield chunks of every heap region, read through one lldb session.

        Regions are read one after another and their chunks are yielded as
        soon as each region arrives.  Setting ``cancel`` stops the reading.
        """
        regions = self._load_regions()

        try:
            proc = subprocess.Popen(
                ["lldb"],
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
            )
        except OSError as exc:
            raise RuntimeError(f"run command failed: {exc}") from exc

        finished = False
        try:
            try:
                self._send(proc, f"process attach --pid {self.pid}\n")
            except OSError as exc:
                raise RuntimeError(f"run command failed: {exc}") from exc
            time.sleep(_ATTACH_WAIT)

            for region in regions:
                if cancel is not None and cancel.is_set():
                    return
                data = self._read_region(proc, region)
                if data is None:
                    continue
                for chunk in split_region(data):
                    if cancel is not None and cancel.is_set():
                        return
                    yield chunk

            self._shutdown(proc)
            finished = True
            logger.info("read memory completed, region length: %d", len(regions))
        finally:
            if not finished and proc.poll() is None:
                proc.kill()
                proc.wait()

    @staticmethod
    def _send(proc: subprocess.Popen, command: str) -> None:
        assert proc.stdin is not None
        proc.stdin.write(command.encode())
        proc.stdin.flush()

    def _read_region(self, proc: subprocess.Popen, region: MemRegion) -> Optional[bytes]:
        pipe_path = _make_pipe_path(f"_{region.start:x}")
        try:
            _make_fifo(pipe_path)
        except RuntimeError as exc:
            logger.warning("failed to create pipe for region 0x%x: %s", region.start, exc)
            return None

        reader = _PipeReader(pipe_path, remove=True)
        reader.start()

        size = region.end - region.start
        logger.debug("reading region 0x%x, size: %d bytes", region.start, size)
        try:
            self._send(
                proc,
                f"memory read --binary --force --outfile {pipe_path} "
                f"--count {size} 0x{region.start:x}\n",
            )
        except OSError as exc:
            logger.warning(
                "failed to send memory read command for region 0x%x: %s",
                region.start,
                exc,
            )
            _release_reader(pipe_path)
            reader.join()
            return None

        reader.join()
        if reader.error is not None:
            logger.warning(
                "failed to read pipe for region 0x%x: %s", region.start, reader.error
            )
            return None
        return reader.data

    def _shutdown(self, proc: subprocess.Popen) -> None:
        try:
            self._send(proc, "process detach\n")
            time.sleep(_DETACH_WAIT)
            self._send(proc, "quit\n")
        except OSError:
            pass
        try:
            assert proc.stdin is not None
            proc.stdin.close()
        except OSError:
            pass
        try:
            code = proc.wait(_EXIT_TIMEOUT)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            logger.warning("timeout waiting for lldb to complete, killed the process")
            return
        if code != 0:
            logger.error("lldb process exited with code %s", code)