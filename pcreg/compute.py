"""
Compute backend: device description, buffer arena and command queues.

Kernels are plain numpy functions operating in place on device memory.
A ``Context`` owns every device array and hands out immutable ``Buffer``
handles; a stage never holds device memory directly, it holds the handle
of the producer whose output it consumes.

``CommandQueue`` is in-order and deferred: ``enqueue`` only records the
kernel, arguments that are ``Buffer`` handles are resolved to arrays when
the command executes. Commands execute at the sync points: ``finish()``,
a blocking ``read()``/``write()`` or ``Event.wait()``.
"""

import itertools
import logging
from collections import deque
from dataclasses import dataclass

import numpy as np

from .errors import BackendError, ConfigurationError

logger = logging.getLogger(__name__)

# (x, y, z, 1, r, g, b, 1)
POINT_DIM = 8

# Output record of a correspondence search
CORRESPONDENCE = np.dtype([('dist', np.float32), ('id', np.int32)])


class Device:
    """
    Description of the compute device.

    Args:
        name: Device label used in log messages
        wg_multiple: Preferred work-group size multiple. A work-group of
            that many work-items reduces or scans 8 elements per item.
    """

    def __init__(self, name='cpu', wg_multiple=64):
        if wg_multiple <= 0 or wg_multiple % 4:
            raise ConfigurationError(
                f"Device: the work-group multiple must be a positive multiple of 4, got {wg_multiple}")
        self.name = name
        self.wg_multiple = int(wg_multiple)

    @property
    def group_elements(self):
        """Number of row elements handled by one work-group."""
        return 8 * self.wg_multiple

    @property
    def max_cols(self):
        """Longest row the two-level primitives can handle."""
        return self.group_elements ** 2

    def __repr__(self):
        return f"Device(name={self.name!r}, wg_multiple={self.wg_multiple})"


@dataclass(frozen=True)
class Buffer:
    """Handle of a device array owned by a Context."""
    id: int
    name: str
    shape: tuple
    dtype: np.dtype

    @property
    def size(self):
        return int(np.prod(self.shape))

    @property
    def nbytes(self):
        return self.size * self.dtype.itemsize


class Context:
    """Owns the device memory of one registration session."""

    def __init__(self, device=None):
        self.device = device if device is not None else Device()
        self._memory = {}
        self._ids = itertools.count()

    def alloc(self, shape, dtype=np.float32, name='buffer'):
        shape = (int(shape),) if np.isscalar(shape) else tuple(int(s) for s in shape)
        if not shape or any(s <= 0 for s in shape):
            raise BackendError(f"Cannot allocate '{name}' with shape {shape}")
        try:
            array = np.zeros(shape, dtype=dtype)
        except (MemoryError, TypeError, ValueError) as e:
            raise BackendError(f"Failed to allocate '{name}' {shape} {dtype}: {e}") from e

        buffer = Buffer(next(self._ids), name, shape, array.dtype)
        self._memory[buffer.id] = array
        logger.debug("Allocated %s %s %s (%d bytes)", name, shape, array.dtype, array.nbytes)
        return buffer

    def view(self, buffer):
        """
        Direct access to device memory.

        No synchronization happens here: the content is whatever the
        buffer holds at this moment, commands still queued are not run.
        """
        try:
            return self._memory[buffer.id]
        except KeyError:
            raise BackendError(f"Buffer '{buffer.name}' is not owned by this context") from None

    def owns(self, buffer):
        return isinstance(buffer, Buffer) and buffer.id in self._memory

    @property
    def allocated_bytes(self):
        return sum(a.nbytes for a in self._memory.values())


class Event:
    """Completion handle of one enqueued command."""

    def __init__(self, queue, seq, name):
        self.queue = queue
        self.seq = seq
        self.name = name

    @property
    def complete(self):
        return self.queue.completed >= self.seq

    def wait(self):
        self.queue.flush(upto=self.seq)

    def __repr__(self):
        state = 'complete' if self.complete else 'pending'
        return f"Event({self.queue.name}:{self.name}#{self.seq}, {state})"


def _copy_to_device(target, data):
    target[...] = data


class CommandQueue:
    """In-order queue with deferred execution."""

    def __init__(self, context, name='queue'):
        self.context = context
        self.name = name
        self.completed = 0
        self._seq = 0
        self._pending = deque()

    @property
    def device(self):
        return self.context.device

    @property
    def pending(self):
        return len(self._pending)

    def enqueue(self, kernel, *args, wait_for=None, name=None):
        """
        Record a kernel launch.

        Args:
            kernel: Callable run with the resolved arguments
            *args: Kernel arguments, Buffer handles are resolved at execution
            wait_for: Events of other queues that must complete first
            name: Label used in events and error messages

        Returns:
            Event of the command
        """
        for arg in args:
            if isinstance(arg, Buffer) and not self.context.owns(arg):
                raise BackendError(f"Buffer '{arg.name}' is not owned by this context")
        self._seq += 1
        event = Event(self, self._seq, name or getattr(kernel, '__name__', 'kernel'))
        self._pending.append((event, kernel, args, tuple(wait_for or ())))
        return event

    def write(self, buffer, data, block=True, wait_for=None):
        """Upload host data; the data is copied when the write is enqueued."""
        host = np.asarray(data)
        if host.size != buffer.size:
            raise ConfigurationError(
                f"Cannot write {host.size} values into '{buffer.name}' of shape {buffer.shape}")
        host = np.array(host, dtype=buffer.dtype).reshape(buffer.shape)
        event = self.enqueue(_copy_to_device, buffer, host, wait_for=wait_for,
                             name=f"write {buffer.name}")
        if block:
            event.wait()
        return event

    def read(self, buffer, wait_for=None):
        """Blocking read: drains the queue and returns a host copy."""
        for event in wait_for or ():
            event.wait()
        self.finish()
        return self.context.view(buffer).copy()

    def finish(self):
        self.flush()

    def flush(self, upto=None):
        while self._pending and (upto is None or self._pending[0][0].seq <= upto):
            event, kernel, args, wait_for = self._pending.popleft()
            for dependency in wait_for:
                if dependency.queue is not self:
                    dependency.wait()
            arrays = [self.context.view(a) if isinstance(a, Buffer) else a for a in args]
            try:
                kernel(*arrays)
            except ArithmeticError:
                self._abort()
                raise
            except Exception as e:
                self._abort()
                raise BackendError(f"Kernel '{event.name}' failed on queue '{self.name}': {e}") from e
            self.completed = event.seq

    def _abort(self):
        if self._pending:
            logger.error("Dropping %d queued commands on '%s' after a kernel failure",
                         len(self._pending), self.name)
        self.completed = self._seq
        self._pending.clear()


class Stage:
    """
    Base class of pipeline stages.

    A stage receives the output handles of its producers when it is
    constructed and allocates its own outputs, so a consumer cannot exist
    before the stage it reads from.
    """

    def __init__(self, queue):
        self.queue = queue
        self.context = queue.context

    @property
    def device(self):
        return self.context.device

    def _alloc(self, shape, dtype=np.float32, name='out'):
        return self.context.alloc(shape, dtype, f"{type(self).__name__}.{name}")

    def _check_input(self, buffer, size, name):
        if not self.context.owns(buffer):
            raise ConfigurationError(
                f"{type(self).__name__}: input '{name}' is not a buffer of this context")
        if buffer.size != size:
            raise ConfigurationError(
                f"{type(self).__name__}: input '{name}' holds {buffer.size} values, "
                f"expected {size}")

    def run(self, wait_for=None):
        """
        Enqueue the stage.

        Returns:
            Event of the last enqueued command, or None for a stage that
            finishes on the host after blocking reads (its results are
            ready when run returns)
        """
        raise NotImplementedError

    def read(self, buffer=None):
        """Blocking read of an output buffer (``d_out`` by default)."""
        return self.queue.read(buffer if buffer is not None else self.d_out)

    def write(self, buffer, data, block=True):
        return self.queue.write(buffer, data, block=block)
