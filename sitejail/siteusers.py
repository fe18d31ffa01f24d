'''Site users as recorded by the hosting control plane.'''
import os
import sqlite3
import logging

from .errors import ConfigError

log = logging.getLogger(__name__)

SITE_USERS_QUERY = "SELECT DISTINCT user FROM site WHERE user!='' AND user IS NOT NULL"


def site_users(db_path):
    '''Return the distinct, non-empty site usernames in row order.

    :raises ConfigError: when the database or its directory is missing or
        can't be queried.
    '''
    db_dir = os.path.dirname(db_path)
    if not os.path.isdir(db_dir):
        raise ConfigError('CloudPanel dir not found: {}'.format(db_dir))
    if not os.path.isfile(db_path):
        raise ConfigError('DB not found at: {}'.format(db_path))
    log.debug('reading site users from %s', db_path)
    try:
        conn = sqlite3.connect('file:{}?mode=ro'.format(db_path), uri=True)
        try:
            rows = conn.execute(SITE_USERS_QUERY).fetchall()
        finally:
            conn.close()
    except sqlite3.Error as e:
        raise ConfigError('cannot read site users from {}: {}'.format(db_path, e)) from e
    return [user for (user,) in rows]
