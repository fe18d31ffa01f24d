'''Account and group identity files.

Records are parsed into named tuples, one field is changed, and the whole
file is written back in its original order. Lines that don't parse
(comments, blanks, NIS markers) are carried through untouched.
'''
import re
import logging
import subprocess
import collections

from . import sysutil
from .errors import IdentityWriteError, ValidationError

log = logging.getLogger(__name__)

USERNAME_RX = re.compile(r'[a-z_][a-z0-9_-]*')


class PasswdRecord(collections.namedtuple(
        'PasswdRecord', ['name', 'password', 'uid', 'gid', 'gecos', 'home', 'shell'])):
    __slots__ = ()

    @classmethod
    def parse(cls, line):
        fields = line.split(':')
        if len(fields) != len(cls._fields):
            return None
        return cls(*fields)

    @property
    def uid_int(self):
        return int(self.uid)

    @property
    def gid_int(self):
        return int(self.gid)

    def __str__(self):
        return ':'.join(self)


class GroupRecord(collections.namedtuple('GroupRecord', ['name', 'password', 'gid', 'members'])):
    __slots__ = ()

    @classmethod
    def parse(cls, line):
        fields = line.split(':')
        if len(fields) != len(cls._fields):
            return None
        return cls(*fields)

    def __str__(self):
        return ':'.join(self)


def validate_username(username):
    '''Reject anything that can't be a system account name.

    :raises ValidationError: for empty names, upper case, a leading digit or
        any character outside ``[a-z0-9_-]``.
    '''
    if not isinstance(username, str) or not USERNAME_RX.fullmatch(username):
        raise ValidationError('invalid username: {!r}'.format(username))
    return username


class IdentityFile(object):
    '''A colon-delimited identity file (passwd or group).

    :param path: file location.
    :param record_type: :class:`PasswdRecord` or :class:`GroupRecord`.
    '''

    def __init__(self, path, record_type=PasswdRecord):
        self.path = path
        self.record_type = record_type

    def _entries(self):
        '''Return a list of (record or None, raw line) in file order.'''
        try:
            with open(self.path) as f:
                lines = f.read().splitlines()
        except FileNotFoundError:
            return []
        return [(self.record_type.parse(line), line) for line in lines]

    def records(self):
        return [rec for rec, _ in self._entries() if rec is not None]

    def lookup(self, name):
        for rec in self.records():
            if rec.name == name:
                return rec
        return None

    def __contains__(self, name):
        return self.lookup(name) is not None

    def _write(self, lines):
        try:
            sysutil.atomic_write(self.path, lines)
        except OSError as e:
            raise IdentityWriteError('cannot rewrite {}: {}'.format(self.path, e), e.errno) from e

    def replace(self, record):
        '''Swap the record named ``record.name`` in place.'''
        entries = self._entries()
        found = False
        lines = []
        for rec, line in entries:
            if rec is not None and rec.name == record.name:
                if found:
                    continue
                found = True
                line = str(record)
            lines.append(line)
        if not found:
            raise IdentityWriteError('{}: no record for {!r}'.format(self.path, record.name))
        self._write(lines)

    def ensure(self, record):
        '''Make ``record`` the single entry for its name, appending it last.

        Returns False when the file already held exactly that entry.
        '''
        entries = self._entries()
        same = [rec for rec, _ in entries if rec is not None and rec.name == record.name]
        if same == [record]:
            return False
        lines = [line for rec, line in entries if rec is None or rec.name != record.name]
        lines.append(str(record))
        self._write(lines)
        return True

    def write_records(self, records):
        self._write([str(rec) for rec in records])

    def update_field(self, name, **fields):
        rec = self.lookup(name)
        if rec is None:
            raise IdentityWriteError('{}: no record for {!r}'.format(self.path, name))
        new = rec._replace(**fields)
        if new != rec:
            self.replace(new)
        return new


def set_shell(passwd, username, shell_path):
    '''Rewrite only the shell field of ``username``'s record.'''
    rec = passwd.update_field(username, shell=shell_path)
    log.info('Set shell to %s for %s', shell_path, username)
    return rec


def set_home(passwd, username, home):
    '''Rewrite only the home-directory field of ``username``'s record.'''
    rec = passwd.update_field(username, home=home)
    log.info('Set home directory to %s for %s', home, username)
    return rec


def create_account(username, home, shell):
    '''useradd(8) the account with its home directory and shell.'''
    log.info("Creating user '%s'...", username)
    try:
        subprocess.run(['useradd', '-m', '-d', home, '-s', shell, username], check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise IdentityWriteError('useradd {} failed: {}'.format(username, e)) from e
    log.info("User '%s' created", username)
