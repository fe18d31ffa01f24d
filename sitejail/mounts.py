import os
import enum
import errno
import shutil
import signal
import logging
import subprocess
import collections

from .errors import MountError
from .sysutil import Kernel, atomic_write, unescape_field

log = logging.getLogger(__name__)


class BindResult(enum.Enum):
    MOUNTED = 'mounted'
    ALREADY_MOUNTED = 'already mounted'


MountRecord = collections.namedtuple('MountRecord', ['src', 'dst', 'persistent'])


def _escape_field(field):
    return field.replace('\\', '\\134').replace(' ', '\\040').replace('\t', '\\011')


class Fstab(object):
    '''The durable mount table.

    Bind entries are written as ``src dst none bind 0 0``. An entry matches
    only when its source and destination fields are equal to the ones asked
    for, so ``/home/al`` never matches ``/home/alice``.
    '''

    def __init__(self, path):
        self.path = path

    def _lines(self):
        try:
            with open(self.path) as f:
                return f.read().splitlines()
        except FileNotFoundError:
            return []

    @staticmethod
    def _fields(line):
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            return None
        fields = stripped.split()
        if len(fields) < 2:
            return None
        return [unescape_field(f) for f in fields]

    def entries(self):
        for line in self._lines():
            fields = self._fields(line)
            if fields is not None:
                yield fields

    def has(self, src, dst):
        return any(f[0] == src and f[1] == dst for f in self.entries())

    def has_destination(self, dst):
        return any(f[1] == dst for f in self.entries())

    def add(self, src, dst):
        '''Append a bind entry for (src, dst) unless one exists; return True if written.'''
        if self.has(src, dst):
            return False
        prefix = '\n' if self._lines() and not self._ends_with_newline() else ''
        try:
            with open(self.path, 'a') as f:
                f.write('{}{} {} none bind 0 0\n'.format(prefix, _escape_field(src), _escape_field(dst)))
        except OSError as e:
            raise MountError('cannot append to {}: {}'.format(self.path, e), e.errno) from e
        return True

    def _ends_with_newline(self):
        with open(self.path, 'rb') as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) == b'\n'

    def remove(self, dst, src=None):
        '''Drop every entry mounted on ``dst`` (from ``src`` if given); return the count.'''
        kept = []
        removed = 0
        for line in self._lines():
            fields = self._fields(line)
            if fields is not None and fields[1] == dst and (src is None or fields[0] == src):
                removed += 1
                continue
            kept.append(line)
        if removed:
            try:
                atomic_write(self.path, kept)
            except OSError as e:
                raise MountError('cannot rewrite {}: {}'.format(self.path, e), e.errno) from e
        return removed


class MountManager(object):
    '''Idempotent bind mounts, with cleanup of the ones this run made.

    Used as a context manager, every *transient* mount created inside the
    block is unmounted on the way out, including when SIGINT or SIGTERM
    arrives. *Persistent* mounts are written to the durable mount table and
    left in place.

    :param fstab: the :class:`Fstab` for persistent mounts.
    :param kernel: mount backend; defaults to :class:`sitejail.sysutil.Kernel`.
    :param reload_units: run ``systemctl daemon-reload`` after fstab changes.
    '''

    signals = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, fstab, kernel=None, reload_units=True):
        self.fstab = fstab
        self.kernel = kernel if kernel is not None else Kernel()
        self.reload_units = reload_units
        self.tracked = []
        self._saved_handlers = {}

    def is_mounted(self, path):
        return self.kernel.is_mounted(path)

    @property
    def transient(self):
        return [m for m in self.tracked if not m.persistent]

    def bind(self, src, dst, persistent=False):
        src = os.path.normpath(src)
        dst = os.path.normpath(dst)
        if not os.path.isdir(src):
            raise MountError("cannot bind mount from '{}'".format(src), errno.ENOENT)
        try:
            os.makedirs(dst, exist_ok=True)
        except OSError as e:
            raise MountError("cannot bind mount to '{}'".format(dst), e.errno) from e

        if self.kernel.is_mounted(dst):
            log.debug("'%s' is already a mount point, not mounting again", dst)
            result = BindResult.ALREADY_MOUNTED
        else:
            log.debug("bind mounting '%s' on '%s'", src, dst)
            try:
                self.kernel.bind(src, dst)
            except OSError as e:
                raise MountError('Failed mounting: mount --bind {} {}'.format(src, dst), e.errno) from e
            self.tracked.append(MountRecord(src, dst, persistent))
            result = BindResult.MOUNTED

        if persistent and self.fstab.add(src, dst):
            log.info('Added fstab entry for bind-mount %s -> %s', src, dst)
            self._reload()
        return result

    def unbind(self, dst):
        '''Unmount ``dst`` if mounted and forget its durable entry.

        Returns True if anything was changed.
        '''
        dst = os.path.normpath(dst)
        changed = False
        if self.kernel.is_mounted(dst):
            log.debug("unmounting '%s'", dst)
            try:
                self.kernel.unmount(dst)
            except OSError as e:
                raise MountError('Failed unmounting {}'.format(dst), e.errno) from e
            changed = True
        else:
            log.debug('No mount at %s to unmount', dst)
        if self.fstab.remove(dst):
            log.info('Removed fstab entry for %s', dst)
            self._reload()
            changed = True
        self.tracked = [m for m in self.tracked if m.dst != dst]
        return changed

    def release_transient(self):
        '''Unmount, deepest first, every transient mount made by this run.'''
        for record in sorted(self.transient, key=lambda m: len(m.dst), reverse=True):
            try:
                if self.kernel.is_mounted(record.dst):
                    self.kernel.unmount(record.dst)
                    log.debug("released transient mount '%s'", record.dst)
            except OSError as e:
                log.error("failed to release transient mount '%s': %s", record.dst, e)
                continue
            self.tracked.remove(record)

    def _reload(self):
        if not self.reload_units:
            return
        systemctl = shutil.which('systemctl')
        if systemctl is None:
            return
        try:
            subprocess.run([systemctl, 'daemon-reload'], check=True)
        except (OSError, subprocess.CalledProcessError) as e:
            log.warning('systemctl daemon-reload failed: %s', e)

    def _signal_handler(self, signum, frame):
        '''Release transient mounts, then re-deliver the signal.'''
        self.release_transient()
        signal.signal(signum, self._saved_handlers.get(signum, signal.SIG_DFL))
        os.kill(os.getpid(), signum)

    def __enter__(self):
        for signum in self.signals:
            try:
                self._saved_handlers[signum] = signal.signal(signum, self._signal_handler)
            except ValueError:
                # not the main thread
                pass
        return self

    def __exit__(self, exc_type, exc_value, exc_traceback):
        try:
            self.release_transient()
        finally:
            for signum, handler in self._saved_handlers.items():
                signal.signal(signum, handler)
            self._saved_handlers = {}
        return False
