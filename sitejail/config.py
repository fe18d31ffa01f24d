import os

ENV_PREFIX = 'SITEJAIL_'


def _env(name, default):
    return os.getenv(ENV_PREFIX + name.upper(), default)


class JailConfig(object):
    '''Paths and constants shared by every part of the jail lifecycle.

    Each value starts from its default, is overridden by the matching
    ``SITEJAIL_<NAME>`` environment variable, and finally by keyword
    arguments (usually from the command line).
    '''

    defaults = {
        'jail_root': '/home/jail',
        'base_name': '.base',
        'home_root': '/home',
        'passwd_path': '/etc/passwd',
        'group_path': '/etc/group',
        'fstab_path': '/etc/fstab',
        'state_dir': '/var/lib/sitejail',
        'db_path': '/home/clp/htdocs/app/data/db.sq3',
        'log_file': '/var/log/jail_all_sites.log',
        'confined_shell': '/usr/sbin/jk_chrootsh',
        'limited_shell': '/usr/sbin/jk_lsh',
        'normal_shell': '/bin/bash',
        'skeleton_tool': 'jk_init',
        'skeleton_sections': 'basicshell netutils ssh sftp scp editors',
        'system_accounts': 'root nobody',
        'chrootsh_conf': '/etc/jailkit/jk_chrootsh.conf',
        'auth_log': '/var/log/auth.log',
    }

    # name: (major, minor)
    devices = {'null': (1, 3), 'zero': (1, 5), 'random': (1, 8), 'urandom': (1, 9)}

    def __init__(self, **overrides):
        unknown = set(overrides) - set(self.defaults)
        if unknown:
            raise TypeError('unknown configuration keys: {}'.format(', '.join(sorted(unknown))))
        for key, default in self.defaults.items():
            value = overrides.get(key)
            if value is None:
                value = _env(key, default)
            setattr(self, key, value)
        for key in ('jail_root', 'home_root', 'state_dir'):
            setattr(self, key, os.path.abspath(getattr(self, key)))

    @classmethod
    def from_arguments(cls, arguments):
        '''Build a config from a docopt argument dictionary.'''
        return cls(
            db_path=arguments.get('--db-path'),
            jail_root=arguments.get('--jail-root'),
            log_file=arguments.get('--log-file'),
        )

    @property
    def base_jail(self):
        return os.path.join(self.jail_root, self.base_name)

    @property
    def system_account_names(self):
        return self.system_accounts.split()

    @property
    def skeleton_section_names(self):
        return self.skeleton_sections.split()

    def user_jail(self, username):
        return os.path.join(self.jail_root, username)

    def real_home(self, username):
        return os.path.join(self.home_root, username)

    def jail_home(self, username):
        '''The user's real home path, repeated under their jail.'''
        return os.path.join(self.user_jail(username), self.real_home(username).lstrip('/'))

    def in_jail(self, root, path):
        return os.path.join(root, path.lstrip('/'))

    def __repr__(self):
        return '{}({})'.format(self.__class__.__name__, ', '.join(
            '{}={!r}'.format(k, getattr(self, k)) for k in sorted(self.defaults)))
