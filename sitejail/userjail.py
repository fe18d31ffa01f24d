'''Per-user jails: instantiate from the base template, merge identities,
expose the real home inside the jail and switch the login shell.'''
import os
import enum
import json
import logging
import collections

from . import sysutil
from .errors import JailError, IdentityWriteError, IntegrityError
from .identity import (IdentityFile, PasswdRecord, GroupRecord, validate_username,
                       create_account, set_shell)

log = logging.getLogger(__name__)


class JailState(enum.Enum):
    UNJAILED = 'unjailed'
    JAILED = 'jailed'
    BROKEN = 'broken'


class JailStatus(collections.namedtuple('JailStatus', [
        'username', 'shell', 'confined', 'home', 'home_exists', 'jail_home',
        'mounted', 'persisted', 'jail_identity'])):
    '''What the system currently says about one account.'''
    __slots__ = ()

    @property
    def state(self):
        # a missing real home can't be mounted; such an account is still jailed
        exposed = self.mounted and self.persisted
        if self.confined and (exposed or not self.home_exists) and self.jail_identity:
            return JailState.JAILED
        if not self.confined and not self.mounted and not self.persisted:
            return JailState.UNJAILED
        return JailState.BROKEN

    def problems(self):
        found = []
        if not self.confined:
            found.append('shell is {}'.format(self.shell))
        if self.home_exists and not self.mounted:
            found.append('{} is not mounted'.format(self.jail_home))
        if self.home_exists and not self.persisted:
            found.append('no fstab entry for {}'.format(self.jail_home))
        if not self.jail_identity:
            found.append('no jail passwd entry')
        return found


class ShellMemory(object):
    '''Remembers the shell an account had before it was first jailed.'''

    def __init__(self, state_dir):
        self.state_dir = state_dir

    def _path(self, username):
        return os.path.join(self.state_dir, '{}.json'.format(username))

    def recall(self, username, default=None):
        try:
            with open(self._path(username)) as f:
                return json.load(f).get('shell', default)
        except FileNotFoundError:
            return default
        except ValueError:
            log.warning('ignoring unreadable shell record %s', self._path(username))
            return default

    def remember(self, username, shell):
        if self.recall(username) is not None:
            return False
        try:
            os.makedirs(self.state_dir, exist_ok=True)
            with open(self._path(username), 'w') as f:
                json.dump({'shell': shell}, f, indent=4)
        except OSError as e:
            raise IdentityWriteError('cannot record shell of {}: {}'.format(username, e), e.errno) from e
        return True

    def forget(self, username):
        try:
            os.remove(self._path(username))
        except FileNotFoundError:
            pass


class UserJailer(object):
    '''Materializes and repairs ``jail_root/<user>`` and jails the account.

    :param config: a :class:`sitejail.config.JailConfig`.
    :param builder: the :class:`sitejail.basejail.BaseJailBuilder` used for
        integrity checks and manual rebuilds.
    :param mounts: a :class:`sitejail.mounts.MountManager`.
    '''

    def __init__(self, config, builder, mounts):
        self.config = config
        self.builder = builder
        self.mounts = mounts
        self.passwd = IdentityFile(config.passwd_path, PasswdRecord)
        self.group = IdentityFile(config.group_path, GroupRecord)
        self.shells = ShellMemory(config.state_dir)

    def original_home(self, username, record=None):
        '''The account's home as the control plane sees it.

        A home field rewritten by the jail toolkit
        (``/home/jail/alice/./home/alice``) or pointing inside the user's
        jail is mapped back to the path outside the jail.
        '''
        if record is None:
            return self.config.real_home(username)
        home = record.home
        jail = self.config.user_jail(username)
        if '/./' in home:
            home = '/' + home.split('/./', 1)[1]
        elif home.startswith(jail + '/'):
            home = home[len(jail):]
        return os.path.normpath(home)

    def jail_home(self, username, record=None):
        return self.config.in_jail(self.config.user_jail(username), self.original_home(username, record))

    def normal_shell(self, username):
        return self.shells.recall(username, self.config.normal_shell)

    def status(self, username):
        record = self.passwd.lookup(username)
        home = self.original_home(username, record)
        jail_home = self.jail_home(username, record)
        jail_passwd = IdentityFile(os.path.join(self.config.user_jail(username), 'etc', 'passwd'))
        shell = record.shell if record else None
        return JailStatus(
            username=username,
            shell=shell,
            confined=shell == self.config.confined_shell,
            home=home,
            home_exists=os.path.isdir(home),
            jail_home=jail_home,
            mounted=self.mounts.is_mounted(jail_home),
            persisted=self.mounts.fstab.has(home, jail_home),
            jail_identity=username in jail_passwd,
        )

    def ensure_account(self, username):
        record = self.passwd.lookup(username)
        if record is None:
            create_account(username, self.config.real_home(username), self.config.confined_shell)
            record = self.passwd.lookup(username)
            if record is None:
                raise IdentityWriteError('{} still missing from {} after useradd'.format(
                    username, self.config.passwd_path))
        return record

    def ensure_jail(self, username, jail_home):
        '''Clone or repair the user's jail until it passes the integrity check.'''
        jail = self.config.user_jail(username)
        missing = self.builder.missing(jail)
        if missing:
            if os.path.isdir(jail):
                log.warning('Jail %s is incomplete (missing %s), repairing', jail, ', '.join(missing))
            try:
                sysutil.clone_tree(self.config.base_jail, jail)
            except OSError as e:
                log.warning('cannot clone %s into %s (%s), creating manually', self.config.base_jail, jail, e)
                self.builder.populate(jail, skip=(jail_home,))
            missing = self.builder.missing(jail)
            if missing:
                raise IntegrityError('jail {} misses {}'.format(jail, ', '.join(missing)), missing)
        sysutil.secure_tree(jail, skip=(jail_home,))
        return jail

    def merge_identity(self, username, record, jail):
        '''Put the user's records into the jail.

        The jail copy carries the original home and the shell the user had
        before jailing; jk_chrootsh refuses itself as the shell inside.
        '''
        home = self.original_home(username, record)
        jail_passwd = IdentityFile(os.path.join(jail, 'etc', 'passwd'), PasswdRecord)
        if jail_passwd.ensure(record._replace(home=home, shell=self.normal_shell(username))):
            log.debug('merged %s into %s', username, jail_passwd.path)
        group = self.group.lookup(username)
        if group is None:
            group = next((g for g in self.group.records() if g.gid == record.gid), None)
        if group is not None:
            IdentityFile(os.path.join(jail, 'etc', 'group'), GroupRecord).ensure(group)

    def own_home(self, home, record):
        '''Give the real home to its user, mode 755.'''
        sysutil.set_owner(home, record.uid_int, record.gid_int)
        os.chmod(home, 0o755)

    def expose_home(self, username, record, jail):
        home = self.original_home(username, record)
        jail_home = self.jail_home(username, record)
        os.makedirs(jail_home, exist_ok=True)
        os.chmod(os.path.dirname(jail_home), 0o755)
        if not os.path.isdir(home):
            log.warning("%s does not exist; '%s' will land in an empty root", home, username)
            sysutil.set_owner(jail_home, record.uid_int, record.gid_int)
            return None
        self.own_home(home, record)
        if not self.mounts.is_mounted(jail_home):
            sysutil.set_owner(jail_home, record.uid_int, record.gid_int)
            os.chmod(jail_home, 0o755)
        result = self.mounts.bind(home, jail_home, persistent=True)
        log.info('Bound %s -> %s (%s)', home, jail_home, result.value)
        return result

    def provision(self, username):
        '''Jail ``username``; every step is safe to repeat.

        Returns :attr:`JailState.JAILED`, or :attr:`JailState.BROKEN` when
        the post-check disagrees. Any failure reverts the shell to normal
        and is raised.
        '''
        validate_username(username)
        try:
            record = self.ensure_account(username)
            if record.shell != self.config.confined_shell:
                self.shells.remember(username, record.shell)
            jail_home = self.jail_home(username, record)
            jail = self.ensure_jail(username, jail_home)
            self.merge_identity(username, record, jail)
            self.expose_home(username, record, jail)
            set_shell(self.passwd, username, self.config.confined_shell)
        except Exception as e:
            log.error("Failed to jail '%s': %s", username, e)
            self._revert_shell(username)
            if isinstance(e, (OSError, ValueError)):
                raise JailError('cannot jail {}: {}'.format(username, e), getattr(e, 'errno', None)) from e
            raise

        try:
            status = self.status(username)
        except (OSError, ValueError) as e:
            raise JailError('cannot check {}: {}'.format(username, e), getattr(e, 'errno', None)) from e
        if status.state is not JailState.JAILED:
            log.warning("'%s' is not fully jailed: %s", username, '; '.join(status.problems()))
            return status.state
        log.info("User '%s' jailed with content preserved at %s", username, status.home)
        return JailState.JAILED

    def _revert_shell(self, username):
        try:
            record = self.passwd.lookup(username)
            if record is not None and record.shell == self.config.confined_shell:
                set_shell(self.passwd, username, self.normal_shell(username))
        except (IdentityWriteError, OSError) as e:
            log.error("could not revert the shell of '%s': %s", username, e)
