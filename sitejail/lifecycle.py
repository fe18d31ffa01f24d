'''Drives the per-user state machine over a stream of usernames.

    Unjailed --provision--> Jailed --release--> Unjailed
    Broken --repair--> Unjailed (or Jailed with rejail=True)

Broken is only ever detected; nothing moves an account there on purpose.
'''
import os
import shutil
import logging
import collections

from .errors import JailError, PrivilegeError, DependencyMissing, ValidationError
from .basejail import BaseJailBuilder
from .identity import validate_username, set_shell, set_home
from .userjail import UserJailer, JailState

log = logging.getLogger(__name__)

Outcome = collections.namedtuple('Outcome', ['username', 'ok', 'state', 'message'])


class Lifecycle(object):
    '''Jail, unjail, repair and inspect accounts.

    :param config: a :class:`sitejail.config.JailConfig`.
    :param mounts: the :class:`sitejail.mounts.MountManager` of this run.
    '''

    def __init__(self, config, mounts, builder=None):
        self.config = config
        self.mounts = mounts
        self.builder = builder if builder is not None else BaseJailBuilder(config)
        self.jailer = UserJailer(config, self.builder, mounts)
        self._prepared = False

    @property
    def passwd(self):
        return self.jailer.passwd

    def check_privileges(self):
        if os.geteuid() != 0:
            raise PrivilegeError('Must run as root')

    def check_dependencies(self):
        for shell in (self.config.confined_shell, self.config.limited_shell):
            if not (os.path.isfile(shell) and os.access(shell, os.X_OK)):
                raise DependencyMissing('{} missing or not executable; install jailkit'.format(shell))
        if shutil.which(self.config.skeleton_tool) is None:
            log.warning('%s not found; jails will be assembled manually', self.config.skeleton_tool)

    def prepare(self):
        '''Privilege and dependency checks, then make sure the base jail exists.'''
        if self._prepared:
            return
        self.check_privileges()
        self.check_dependencies()
        self.builder.ensure_base()
        self._prepared = True

    def state(self, username):
        validate_username(username)
        return self.jailer.status(username).state

    def provision(self, username):
        self.prepare()
        return self.jailer.provision(username)

    def _known(self, username):
        validate_username(username)
        record = self.passwd.lookup(username)
        if record is None:
            raise ValidationError('no such account: {!r}'.format(username))
        return record

    def release(self, username):
        '''Unmount the home, drop its fstab entry and restore the normal shell.

        The jail directory is kept for the next provisioning.
        '''
        record = self._known(username)
        self.mounts.unbind(self.jailer.jail_home(username, record))
        if record.shell == self.config.confined_shell:
            set_shell(self.passwd, username, self.jailer.normal_shell(username))
        self.jailer.shells.forget(username)
        log.info("Unjailed '%s'", username)
        return self.state(username)

    def repair(self, username, rejail=False):
        '''Bring a possibly broken account back to a consistent state.

        The home field is pointed back outside the jail, stale mounts and
        fstab entries are cleared and the shell is restored. With
        ``rejail`` the account is then provisioned again.
        '''
        record = self._known(username)
        home = self.jailer.original_home(username, record)
        if record.home != home:
            set_home(self.passwd, username, home)
        if os.path.isdir(home):
            self.jailer.own_home(home, record)
        self.release(username)
        if rejail:
            return self.provision(username)
        log.info('Fixed user %s', username)
        return self.state(username)

    def _guarded(self, action, username, **kwargs):
        try:
            return action(username, **kwargs)
        except (OSError, ValueError) as e:
            raise JailError('{}: {}'.format(action.__name__, e), getattr(e, 'errno', None)) from e

    def _each(self, usernames, action, expected, **kwargs):
        outcomes = []
        for username in usernames:
            try:
                state = self._guarded(action, username, **kwargs)
            except JailError as e:
                if e.fatal:
                    raise
                if isinstance(e, ValidationError):
                    log.warning('Skipping %r: %s', username, e)
                else:
                    log.error("'%s': %s", username, e)
                outcomes.append(Outcome(username, False, None, str(e)))
                continue
            ok = state in expected
            outcomes.append(Outcome(username, ok, state, state.value))
        return outcomes

    def provision_all(self, usernames):
        self.prepare()
        outcomes = self._each(usernames, self.jailer.provision, (JailState.JAILED,))
        log.info('%d of %d site users jailed', sum(o.ok for o in outcomes), len(outcomes))
        return outcomes

    def release_all(self, usernames):
        self.check_privileges()
        return self._each(usernames, self.release, (JailState.UNJAILED,))

    def repair_all(self, usernames, rejail=False):
        self.check_privileges()
        expected = (JailState.JAILED,) if rejail else (JailState.UNJAILED,)
        return self._each(usernames, self.repair, expected, rejail=rejail)
