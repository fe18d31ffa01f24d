import os
import errno
import shutil
import logging
import subprocess

from . import sysutil
from .errors import DependencyMissing, IntegrityError
from .identity import IdentityFile, PasswdRecord, GroupRecord

log = logging.getLogger(__name__)

SKELETON_DIRS = ('bin', 'dev', 'etc', 'home', 'lib', 'lib64', 'tmp', 'usr/bin', 'usr/lib', 'usr/sbin')


class BaseJailBuilder(object):
    '''Builds the shared jail skeleton every user jail is cloned from.

    The same required-path check and the same population steps are used to
    repair a user jail in place when it can't be cloned.

    :param config: a :class:`sitejail.config.JailConfig`.
    '''

    def __init__(self, config):
        self.config = config
        self._libraries = None

    @property
    def shells(self):
        return (self.config.confined_shell, self.config.limited_shell)

    def libraries(self):
        '''Shared objects the confined shell needs, resolved once per run.'''
        if self._libraries is None:
            try:
                self._libraries = sysutil.shared_libraries(self.config.confined_shell)
            except OSError as e:
                raise DependencyMissing(
                    'cannot resolve libraries for {}: {}'.format(self.config.confined_shell, e)) from e
        return self._libraries

    def required_paths(self):
        paths = [shell.lstrip('/') for shell in self.shells]
        paths += ['etc/passwd', 'etc/group']
        paths += ['dev/' + name for name in sorted(self.config.devices)]
        paths += [lib.lstrip('/') for lib in self.libraries()]
        return paths

    def missing(self, root):
        '''Return the required paths absent from the tree at ``root``.'''
        if not os.path.isdir(root):
            return self.required_paths()
        return [p for p in self.required_paths() if not os.path.lexists(os.path.join(root, p))]

    def ensure_base(self):
        base = self.config.base_jail
        if os.path.isdir(base):
            missing = self.missing(base)
            if not missing:
                log.debug('Base jail %s is intact', base)
                return base
            log.warning('Base jail %s is incomplete (missing %s), rebuilding', base, ', '.join(missing))
        else:
            log.info('Initializing global jail at %s', base)

        self.build(base)
        missing = self.missing(base)
        if missing:
            raise IntegrityError('base jail {} still misses {}'.format(base, ', '.join(missing)),
                                 missing, fatal=True)
        return base

    def build(self, root):
        for path in (self.config.jail_root, root):
            os.makedirs(path, exist_ok=True)
            sysutil.set_owner(path, 0, 0)
            os.chmod(path, 0o755)
        self.run_skeleton_tool(root)
        self.populate(root)

    def run_skeleton_tool(self, root):
        '''Let the jail toolkit lay down its standard sections.

        Returns False when the tool is absent or fails; the manual skeleton
        built by :meth:`populate` is enough on its own.
        '''
        tool = shutil.which(self.config.skeleton_tool)
        if tool is None:
            log.warning('%s not found, creating jail %s manually', self.config.skeleton_tool, root)
            return False
        cmd = [tool, '-v', root] + self.config.skeleton_section_names
        log.debug('running %s', ' '.join(cmd))
        try:
            subprocess.run(cmd, check=True)
        except (OSError, subprocess.CalledProcessError) as e:
            log.warning('%s failed for %s (%s), creating manually', self.config.skeleton_tool, root, e)
            return False
        return True

    def populate(self, root, skip=()):
        '''Install the minimum a confined login needs into ``root``.

        :param skip: paths under ``root`` left out of the ownership pass.
        '''
        for d in SKELETON_DIRS:
            os.makedirs(os.path.join(root, d), exist_ok=True)

        for shell in self.shells:
            if not os.path.isfile(shell):
                raise DependencyMissing('{} is missing'.format(shell), errno=errno.ENOENT)
            self._copy(shell, root)
            os.chmod(self.config.in_jail(root, shell), 0o755)
        for lib in self.libraries():
            self._copy(lib, root)

        self.write_system_identities(root)

        for name, (major, minor) in sorted(self.config.devices.items()):
            sysutil.make_char_device(os.path.join(root, 'dev', name), major, minor)

        sysutil.secure_tree(root, skip=skip)
        log.debug('populated jail skeleton at %s', root)

    def _copy(self, src, root):
        dst = self.config.in_jail(root, src)
        os.makedirs(os.path.dirname(dst), exist_ok=True)
        shutil.copy2(os.path.realpath(src), dst)

    def write_system_identities(self, root):
        '''Seed the jail's passwd and group with the system accounts only.'''
        accounts = self.config.system_account_names
        for source, record_type, name in ((self.config.passwd_path, PasswdRecord, 'passwd'),
                                          (self.config.group_path, GroupRecord, 'group')):
            records = [r for r in IdentityFile(source, record_type).records() if r.name in accounts]
            IdentityFile(os.path.join(root, 'etc', name), record_type).write_records(records)
