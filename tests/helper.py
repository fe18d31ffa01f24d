import os
import errno
import shutil
import tempfile
import unittest
from unittest import mock

from sitejail.config import JailConfig
from sitejail.lifecycle import Lifecycle
from sitejail.mounts import Fstab, MountManager

PASSWD = """\
root:x:0:0:root:/root:/bin/bash
daemon:x:1:1:daemon:/usr/sbin:/usr/sbin/nologin
nobody:x:65534:65534:nobody:/nonexistent:/usr/sbin/nologin
alice:x:1001:1001:Alice:{home}/alice:/bin/bash
carol:x:1003:1003::{home}/carol:/bin/zsh
"""

GROUP = """\
root:x:0:
daemon:x:1:
nogroup:x:65534:
alice:x:1001:
carol:x:1003:
"""

FSTAB = "UUID=0a1b2c / ext4 errors=remount-ro 0 1\n"


class FakeKernel(object):
    '''In-memory mount table standing in for mount(2) and mountinfo.'''

    def __init__(self):
        self.mounted = {}
        self.calls = []
        self.fail = False

    def is_mounted(self, path):
        return os.path.normpath(path) in self.mounted

    def bind(self, src, dst):
        self.calls.append(('bind', src, dst))
        if self.fail:
            raise OSError(errno.EPERM, os.strerror(errno.EPERM))
        if dst in self.mounted:
            raise OSError(errno.EBUSY, os.strerror(errno.EBUSY))
        self.mounted[dst] = src

    def unmount(self, dst):
        self.calls.append(('unmount', dst))
        if dst not in self.mounted:
            raise OSError(errno.EINVAL, os.strerror(errno.EINVAL))
        del self.mounted[dst]

    def binds(self):
        return [c for c in self.calls if c[0] == 'bind']


def _fake_mknod(path, mode=0o600, device=0):
    open(path, 'w').close()


def write(path, text, mode=None):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        f.write(text)
    if mode is not None:
        os.chmod(path, mode)


def read(path):
    with open(path) as f:
        return f.read()


class JailTestCase(unittest.TestCase):
    '''A throwaway host: identity files, fstab, homes and jailkit shells.

    Root-only calls are patched out and mounts go to a :class:`FakeKernel`.
    '''

    def setUp(self):
        self.root = tempfile.mkdtemp(prefix='sitejail')
        self.addCleanup(shutil.rmtree, self.root)
        self.home_root = self.path('home')

        write(self.path('etc/passwd'), PASSWD.format(home=self.home_root))
        write(self.path('etc/group'), GROUP)
        write(self.path('etc/fstab'), FSTAB)
        write(self.path('home/alice/htdocs/index.html'), '<h1>alice</h1>\n')
        write(self.path('home/carol/htdocs/index.html'), '<h1>carol</h1>\n')
        write(self.path('usr/sbin/jk_chrootsh'), '#!/bin/sh\n', 0o755)
        write(self.path('usr/sbin/jk_lsh'), '#!/bin/sh\n', 0o755)
        write(self.path('lib/x86_64-linux-gnu/libc.so.6'), 'ELF')
        self.libraries = [self.path('lib/x86_64-linux-gnu/libc.so.6')]

        self.config = JailConfig(
            jail_root=self.path('jail'),
            home_root=self.home_root,
            passwd_path=self.path('etc/passwd'),
            group_path=self.path('etc/group'),
            fstab_path=self.path('etc/fstab'),
            state_dir=self.path('var/lib/sitejail'),
            confined_shell=self.path('usr/sbin/jk_chrootsh'),
            limited_shell=self.path('usr/sbin/jk_lsh'),
            normal_shell='/bin/bash',
            skeleton_tool='sitejail-test-no-jk-init',
            chrootsh_conf=self.path('etc/jailkit/jk_chrootsh.conf'),
            auth_log=self.path('var/log/auth.log'),
        )

        self.chown = self.patch('os.chown')
        self.patch('os.mknod', side_effect=_fake_mknod)
        self.geteuid = self.patch('os.geteuid', return_value=0)
        self.patch('sitejail.sysutil.shared_libraries', return_value=self.libraries)

        self.kernel = FakeKernel()
        self.fstab = Fstab(self.config.fstab_path)
        self.mounts = MountManager(self.fstab, kernel=self.kernel, reload_units=False)
        self.lifecycle = Lifecycle(self.config, self.mounts)

    def patch(self, target, **kwargs):
        patcher = mock.patch(target, **kwargs)
        self.addCleanup(patcher.stop)
        return patcher.start()

    def path(self, relative):
        return os.path.join(self.root, relative)

    def passwd_field(self, username, index, path=None):
        for line in read(path or self.config.passwd_path).splitlines():
            fields = line.split(':')
            if fields[0] == username:
                return fields[index]
        return None

    def shell_of(self, username):
        return self.passwd_field(username, 6)

    def home_of(self, username, path=None):
        return self.passwd_field(username, 5, path)

    def jail_home(self, username):
        return os.path.join(self.config.user_jail(username), self.home_root.lstrip('/'), username)
