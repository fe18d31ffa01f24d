# mount() and the MS_BIND flag from https://github.com/pkgcore/snakeoil via easychroot
# Copyright 2018 Ian Daniher <itdaniher@gmail.com> under the BSD-3 Clause License
# Copyright 2015-2017 Tim Harder <radhermit@gmail.com> under the BSD-3 Clause License
#
# Thin wrappers over the system calls and tools the jail lifecycle relies on.
#
# mount(2)/umount2(2) go through ctypes so a failure surfaces as an OSError
# with the real errno instead of a mount(8) exit status.

import os
import re
import stat
import ctypes
import shutil
import logging
import tempfile
import subprocess

from typing import List, Optional, Set

log = logging.getLogger(__name__)

MS_BIND = 4096

MOUNTINFO = "/proc/self/mountinfo"


def _libc():
    return ctypes.CDLL(None, use_errno=True)


def mount(source: Optional[str], target: str, fstype: Optional[str], flags: int, data: None = None) -> None:
    "Call mount(2); see the man page for details."
    libc = _libc()
    source = source.encode() if isinstance(source, str) else source
    target = target.encode() if isinstance(target, str) else target
    fstype = fstype.encode() if isinstance(fstype, str) else fstype
    if libc.mount(source, target, fstype, ctypes.c_ulong(flags), data) != 0:
        e = ctypes.get_errno()
        raise OSError(e, os.strerror(e))


def umount(target: str, flags: int = 0) -> None:
    "Call umount2(2); see the man page for details."
    libc = _libc()
    if libc.umount2(target.encode(), ctypes.c_int(flags)) != 0:
        e = ctypes.get_errno()
        raise OSError(e, os.strerror(e))


def unescape_field(field: str) -> str:
    return re.sub(r"\\(\d{3})", lambda m: chr(int(m.group(1), 8)), field)


def mountpoints(mountinfo: str = MOUNTINFO) -> Set[str]:
    """Return every active mount point, read from mountinfo.

    os.path.ismount() can't see a bind mount whose source lives on the same
    filesystem, so the kernel's table is the only reliable answer.
    """
    points = set()
    with open(mountinfo) as f:
        for line in f:
            fields = line.rstrip("\n").split(" ")
            if len(fields) > 4:
                points.add(unescape_field(fields[4]))
    return points


class Kernel(object):
    """The live mount table, as seen by the mount manager."""

    def __init__(self, mountinfo: str = MOUNTINFO) -> None:
        self.mountinfo = mountinfo

    def is_mounted(self, path: str) -> bool:
        return os.path.realpath(path) in mountpoints(self.mountinfo)

    def bind(self, src: str, dst: str) -> None:
        mount(source=src, target=dst, fstype=None, flags=MS_BIND)

    def unmount(self, dst: str) -> None:
        umount(dst)


def make_char_device(path: str, major: int, minor: int, mode: int = 0o666) -> None:
    "Create a character device node; a node already at |path| is left alone."
    if os.path.lexists(path):
        return
    os.mknod(path, stat.S_IFCHR | mode, os.makedev(major, minor))
    os.chmod(path, mode)


def set_owner(path: str, uid: int, gid: int) -> None:
    os.chown(path, uid, gid, follow_symlinks=False)


def atomic_write(path: str, lines: List[str]) -> None:
    """Replace |path| with |lines| through a temporary file in the same directory.

    Mode and ownership of an existing file are kept. Raises OSError.
    """
    directory = os.path.dirname(os.path.abspath(path))
    try:
        st = os.stat(path)
    except FileNotFoundError:
        st = None
    fd, tmp = tempfile.mkstemp(prefix="." + os.path.basename(path), dir=directory)
    try:
        with os.fdopen(fd, "w") as f:
            f.write("".join(line + "\n" for line in lines))
        if st is not None:
            os.chmod(tmp, st.st_mode & 0o7777)
            if (st.st_uid, st.st_gid) != (os.getuid(), os.getgid()):
                os.chown(tmp, st.st_uid, st.st_gid)
        os.replace(tmp, path)
    except OSError:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def secure_tree(root: str, uid: int = 0, gid: int = 0, mode: int = 0o755, skip: tuple = ()) -> None:
    """chown -R / chmod -R for directories and regular files under |root|.

    Paths in |skip| are pruned, so a bind-mounted home is never rewritten.
    Device nodes keep their own mode.
    """
    skip = {os.path.normpath(p) for p in skip}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if os.path.join(dirpath, d) not in skip]
        set_owner(dirpath, uid, gid)
        os.chmod(dirpath, mode)
        for name in filenames:
            path = os.path.join(dirpath, name)
            if path in skip or os.path.islink(path):
                continue
            set_owner(path, uid, gid)
            if stat.S_ISREG(os.lstat(path).st_mode):
                os.chmod(path, mode)


_LDD_RX = re.compile(r"^\s*(?:\S+\s+=>\s+)?(/\S+)\s+\(0x[0-9a-f]+\)")


def shared_libraries(binary: str) -> List[str]:
    """List the absolute paths of the shared objects |binary| links against.

    Raises:
        OSError: if ldd is missing or can't resolve the binary.
    """
    ldd = shutil.which("ldd")
    if ldd is None:
        raise OSError("ldd not found")
    try:
        out = subprocess.run([ldd, binary], check=True, stdout=subprocess.PIPE,
                             stderr=subprocess.PIPE, universal_newlines=True).stdout
    except subprocess.CalledProcessError as e:
        raise OSError("ldd {} failed: {}".format(binary, e.stderr.strip()))
    libs = []
    for line in out.splitlines():
        m = _LDD_RX.match(line)
        if m:
            libs.append(m.group(1))
    return libs


def _copy_special(src: str, dst: str) -> None:
    "copy2 that recreates device nodes instead of reading from them."
    st = os.lstat(src)
    if stat.S_ISCHR(st.st_mode) or stat.S_ISBLK(st.st_mode):
        if not os.path.lexists(dst):
            os.mknod(dst, st.st_mode, st.st_rdev)
        return
    shutil.copy2(src, dst)


def clone_tree(src: str, dst: str) -> None:
    "cp -a |src| into |dst|, merging with whatever |dst| already holds."
    shutil.copytree(src, dst, symlinks=True, copy_function=_copy_special, dirs_exist_ok=True)
