__doc__ = """sitejail: jail site users while keeping their content at /home/<user>.

Usage:
  sitejail [options] [<user>...]
  sitejail --unjail [options] [<user>...]
  sitejail --fix [--rejail] [options] [<user>...]
  sitejail --diagnose [options] <user>
  sitejail (-h | --help)
  sitejail --version

Without <user> arguments the site users are read from the control panel
database.

Options:
  -h --help             Show this screen.
  --version             Show version.
  -d --db-path=PATH     Custom CloudPanel DB path.
  -j --jail-root=PATH   Custom jail root.
  -l --log-file=PATH    Custom log file.
  -v --verbose          Enable verbose console output.
  -y --yes              Skip confirmation.
  --unjail              Release users: unmount homes and restore their shells.
  --fix                 Repair users back to their original, unjailed state.
  --rejail              With --fix, jail the users again after repairing.
  --diagnose            Report on one user's jail without changing anything.

"""
import os
import sys
import logging

from docopt import docopt

from . import __version__
from .config import JailConfig
from .diagnose import diagnose
from .errors import JailError
from .lifecycle import Lifecycle
from .mounts import Fstab, MountManager
from .siteusers import site_users

log = logging.getLogger('sitejail')

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'


def setup_logging(log_file, verbose=False):
    logger = logging.getLogger('sitejail')
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.addHandler(console)

    try:
        os.makedirs(os.path.dirname(log_file), exist_ok=True)
        handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning('not logging to %s: %s', log_file, e)
    else:
        handler.setFormatter(formatter)
        handler.setLevel(logging.DEBUG)
        logger.addHandler(handler)
    return logger


def confirm(config, users, assume_yes=False):
    log.info('Config: DB=%s, JAIL_ROOT=%s', config.db_path, config.jail_root)
    if not users:
        log.warning('No users to jail')
        return False
    log.info('Users:')
    for user in users:
        log.info(' - %s', user)
    if assume_yes:
        return True
    try:
        answer = input('Proceed? (y/N) ')
    except EOFError:
        return False
    return answer.strip().lower() in ('y', 'yes')


def report(outcomes):
    for outcome in outcomes:
        if outcome.ok:
            log.info('%s: %s', outcome.username, outcome.message)
        else:
            log.warning('%s: FAILED (%s)', outcome.username, outcome.message)


def run(config, arguments):
    with MountManager(Fstab(config.fstab_path)) as mounts:
        lifecycle = Lifecycle(config, mounts)

        if arguments['--diagnose']:
            print(diagnose(config, arguments['<user>'][0], lifecycle.jailer).render())
            return 0

        users = arguments['<user>'] or site_users(config.db_path)
        if arguments['--fix']:
            outcomes = lifecycle.repair_all(users, rejail=arguments['--rejail'])
            log.info('All users fixed.')
        elif arguments['--unjail']:
            outcomes = lifecycle.release_all(users)
        else:
            lifecycle.prepare()
            if not confirm(config, users, arguments['--yes']):
                log.info('Aborted')
                return 0
            outcomes = lifecycle.provision_all(users)
        report(outcomes)
    return 0


def main(argv=None):
    arguments = docopt(__doc__, argv=argv, version='sitejail v{}'.format(__version__))
    config = JailConfig.from_arguments(arguments)
    setup_logging(config.log_file, arguments['--verbose'])
    try:
        return run(config, arguments)
    except JailError as e:
        log.error('%s', e)
        return 1
    except KeyboardInterrupt:
        log.error('Interrupted')
        return 1


if __name__ == '__main__':
    sys.exit(main())
