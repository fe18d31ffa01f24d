'''Read-only report on one account's jail.

Nothing in here writes to the filesystem, the identity files or the mount
table.
'''
import os
import pwd
import grp
import stat
import shutil
import logging
import subprocess
import collections

from .identity import IdentityFile, PasswdRecord, validate_username
from .mounts import Fstab

log = logging.getLogger(__name__)

OK = 'OK'
WARNING = 'WARNING'
ERROR = 'ERROR'

Check = collections.namedtuple('Check', ['level', 'text'])


class Section(object):
    def __init__(self, title):
        self.title = title
        self.lines = []

    def check(self, passed, ok_text, error_text, level=ERROR):
        self.lines.append(Check(OK if passed else level, ok_text if passed else error_text))
        return passed

    def flag(self, text, level=WARNING):
        self.lines.append(Check(level, text))

    def info(self, text):
        self.lines.append(Check(None, text))


class Diagnosis(object):
    def __init__(self, username):
        self.username = username
        self.sections = []

    def section(self, title):
        s = Section(title)
        self.sections.append(s)
        return s

    @property
    def errors(self):
        return [c for s in self.sections for c in s.lines if c.level == ERROR]

    def render(self):
        out = ['=' * 20 + ' JAIL DIAGNOSTICS ' + '=' * 20,
               'Diagnosing jail for user: {}'.format(self.username)]
        for n, s in enumerate(self.sections, 1):
            out.append('{}. {}'.format(n, s.title))
            for c in s.lines:
                out.append('   [{}] {}'.format(c.level, c.text) if c.level else '   ' + c.text)
        out.append('=' * 58)
        return '\n'.join(out)


def describe(path):
    '''ls -ld style: mode, owner, group, path.'''
    try:
        st = os.lstat(path)
    except OSError as e:
        return '{}: {}'.format(path, e.strerror)
    try:
        owner = pwd.getpwuid(st.st_uid).pw_name
    except KeyError:
        owner = str(st.st_uid)
    try:
        group = grp.getgrgid(st.st_gid).gr_name
    except KeyError:
        group = str(st.st_gid)
    return '{} {} {} {}'.format(stat.filemode(st.st_mode), owner, group, path)


def _executable(path):
    return os.path.isfile(path) and os.access(path, os.X_OK)


def _run(cmd):
    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                              universal_newlines=True)
    except OSError as e:
        return None, str(e)
    return proc.returncode, proc.stdout.strip()


def security_modules():
    '''(name, state) for SELinux and AppArmor; absence is a state, not an error.'''
    found = []
    if shutil.which('getenforce'):
        _, out = _run(['getenforce'])
        found.append(('SELinux', out or 'unknown'))
    else:
        found.append(('SELinux', 'not installed'))
    if shutil.which('aa-status'):
        code, _ = _run(['aa-status', '--enabled'])
        found.append(('AppArmor', 'enabled' if code == 0 else 'disabled'))
    else:
        found.append(('AppArmor', 'not installed'))
    return found


def auth_log_tail(path, needles, count=10):
    try:
        with open(path, errors='replace') as f:
            lines = [line.rstrip('\n') for line in f if any(n in line for n in needles)]
    except OSError as e:
        log.debug('cannot read %s: %s', path, e)
        return []
    return lines[-count:]


def diagnose(config, username, jailer):
    '''Build a :class:`Diagnosis` for ``username``.

    :param jailer: the :class:`sitejail.userjail.UserJailer` whose view of
        homes and mounts is reported.
    '''
    validate_username(username)
    d = Diagnosis(username)
    status = jailer.status(username)
    jail = config.user_jail(username)
    in_jail_shell = config.in_jail(jail, config.confined_shell)

    s = d.section('Shell in passwd: {}'.format(status.shell))
    s.check(status.confined, 'Shell is set to {}'.format(config.confined_shell),
            'Shell is not set to {}'.format(config.confined_shell))

    s = d.section('Checking {}:'.format(os.path.basename(config.confined_shell)))
    s.check(_executable(config.confined_shell),
            '{} exists and is executable'.format(config.confined_shell),
            '{} missing or not executable'.format(config.confined_shell))
    s.check(_executable(in_jail_shell),
            '{} exists and is executable'.format(in_jail_shell),
            'Jail {} missing or not executable'.format(in_jail_shell))

    s = d.section('Checking mount:')
    s.check(status.mounted, '{} is mounted'.format(status.jail_home),
            '{} is not mounted'.format(status.jail_home))
    s.check(status.persisted, 'fstab entry {} -> {}'.format(status.home, status.jail_home),
            'no fstab entry {} -> {}'.format(status.home, status.jail_home))
    s.check(status.home_exists, 'real home {} exists'.format(status.home),
            'real home {} does not exist'.format(status.home), level=WARNING)
    others = [f for f in Fstab(config.fstab_path).entries()
              if f[1] == status.jail_home and f[0] != status.home]
    for f in others:
        s.flag('stale fstab entry {} -> {}'.format(f[0], f[1]))

    s = d.section('Checking permissions:')
    s.info('User jail: {}'.format(describe(jail)))
    s.info('User home in jail: {}'.format(describe(status.jail_home)))
    s.info('Real home: {}'.format(describe(status.home)))

    s = d.section('Checking jailkit config:')
    if s.check(os.path.isfile(config.chrootsh_conf), '{} exists'.format(os.path.basename(config.chrootsh_conf)),
               '{} not found'.format(os.path.basename(config.chrootsh_conf)), level=WARNING):
        try:
            with open(config.chrootsh_conf) as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith('#'):
                        s.info(line)
        except OSError as e:
            s.flag('cannot read {}: {}'.format(config.chrootsh_conf, e.strerror))

    s = d.section('Passwd entries:')
    system = IdentityFile(config.passwd_path, PasswdRecord).lookup(username)
    jailed = IdentityFile(os.path.join(jail, 'etc', 'passwd'), PasswdRecord).lookup(username)
    s.info('System passwd: {}'.format(system or ''))
    s.info('Jail passwd: {}'.format(jailed or ''))
    if system is not None and system.home != status.home:
        s.flag('home field {} points inside the jail'.format(system.home))
    if jailed is not None:
        s.check(jailed.home == status.home, 'jail home field is {}'.format(jailed.home),
                'jail home field {} differs from {}'.format(jailed.home, status.home), level=WARNING)

    s = d.section('Security modules:')
    for name, state in security_modules():
        s.info('{}: {}'.format(name, state))

    s = d.section('Recent auth log entries for {}:'.format(username))
    for line in auth_log_tail(config.auth_log, (username, 'chrootsh', 'jailkit')):
        s.info(line)

    s = d.section('State: {}'.format(status.state.value))
    for problem in status.problems():
        s.info(problem)
    s.info('To test the jail directly, try:')
    s.info('{} -j {} -n {}'.format(config.confined_shell, jail, username))
    s.info('chroot {} /bin/bash -l'.format(jail))
    s.info('or repair with --fix and run again')
    return d
