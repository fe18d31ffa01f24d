import os
import shutil
import unittest
from unittest import mock

from sitejail.errors import DependencyMissing, MountError, PrivilegeError
from sitejail.userjail import JailState

from tests.helper import FSTAB, JailTestCase, read, write


class ProvisionTest(JailTestCase):
    def setUp(self):
        super(ProvisionTest, self).setUp()
        self.confined = self.config.confined_shell
        self.alice_home = self.path('home/alice')
        self.alice_jail_home = self.jail_home('alice')
        self.alice_jail_passwd = os.path.join(self.config.user_jail('alice'), 'etc/passwd')

    def fstab_entry(self, src, dst):
        return '{} {} none bind 0 0'.format(src, dst)

    def test_provision(self):
        self.assertEqual(self.lifecycle.state('alice'), JailState.UNJAILED)
        self.assertEqual(self.lifecycle.provision('alice'), JailState.JAILED)

        self.assertEqual(self.shell_of('alice'), self.confined)
        self.assertEqual(self.home_of('alice'), self.alice_home)
        self.assertEqual(self.kernel.mounted, {self.alice_jail_home: self.alice_home})
        self.assertEqual(read(self.config.fstab_path).splitlines().count(
            self.fstab_entry(self.alice_home, self.alice_jail_home)), 1)
        self.assertEqual(self.home_of('alice', self.alice_jail_passwd), self.alice_home)
        self.assertIn('alice:x:1001:', read(os.path.join(self.config.user_jail('alice'), 'etc/group')))
        self.assertEqual(self.lifecycle.state('alice'), JailState.JAILED)

    def test_content_is_never_moved(self):
        self.lifecycle.provision('alice')
        self.assertEqual(read(self.path('home/alice/htdocs/index.html')), '<h1>alice</h1>\n')

    def test_provision_is_idempotent(self):
        self.lifecycle.provision('alice')
        passwd = read(self.config.passwd_path)
        fstab = read(self.config.fstab_path)
        jail_passwd = read(self.alice_jail_passwd)

        self.assertEqual(self.lifecycle.provision('alice'), JailState.JAILED)
        self.assertEqual(read(self.config.passwd_path), passwd)
        self.assertEqual(read(self.config.fstab_path), fstab)
        self.assertEqual(read(self.alice_jail_passwd), jail_passwd)
        self.assertEqual(len(self.kernel.binds()), 1)

    def test_jail_record_keeps_login_shell(self):
        self.lifecycle.provision('alice')
        self.lifecycle.provision('alice')
        self.assertEqual(self.passwd_field('alice', 6, self.alice_jail_passwd), '/bin/bash')
        self.lifecycle.provision('carol')
        self.lifecycle.provision('carol')
        carol_jail_passwd = os.path.join(self.config.user_jail('carol'), 'etc/passwd')
        self.assertEqual(self.passwd_field('carol', 6, carol_jail_passwd), '/bin/zsh')

    def test_real_home_belongs_to_user(self):
        os.chmod(self.alice_home, 0o700)
        self.lifecycle.provision('alice')
        self.assertIn(mock.call(self.alice_home, 1001, 1001, follow_symlinks=False),
                      self.chown.call_args_list)
        self.assertEqual(os.stat(self.alice_home).st_mode & 0o777, 0o755)

    def test_release_round_trip(self):
        self.lifecycle.provision('alice')
        self.assertEqual(self.lifecycle.release('alice'), JailState.UNJAILED)

        self.assertEqual(self.shell_of('alice'), '/bin/bash')
        self.assertEqual(self.kernel.mounted, {})
        self.assertEqual(read(self.config.fstab_path), FSTAB)
        self.assertTrue(os.path.isdir(self.config.user_jail('alice')))

        self.assertEqual(self.lifecycle.provision('alice'), JailState.JAILED)
        self.assertEqual(self.kernel.mounted, {self.alice_jail_home: self.alice_home})

    def test_release_restores_previous_shell(self):
        self.lifecycle.provision('carol')
        self.lifecycle.release('carol')
        self.assertEqual(self.shell_of('carol'), '/bin/zsh')

    def test_incomplete_jail_is_repaired(self):
        self.lifecycle.provision('alice')
        jail = self.config.user_jail('alice')
        os.remove(self.config.in_jail(jail, self.confined))
        os.remove(os.path.join(jail, 'etc/group'))
        os.remove(os.path.join(jail, 'dev/zero'))

        self.assertEqual(self.lifecycle.provision('alice'), JailState.JAILED)
        self.assertEqual(self.lifecycle.builder.missing(jail), [])
        self.assertIn('alice:x:1001:', read(os.path.join(jail, 'etc/group')))
        self.assertEqual(len(self.kernel.binds()), 1)

    def test_clone_failure_builds_manually(self):
        with mock.patch('sitejail.sysutil.clone_tree', side_effect=OSError('cross-device')):
            self.assertEqual(self.lifecycle.provision('alice'), JailState.JAILED)
        self.assertEqual(self.lifecycle.builder.missing(self.config.user_jail('alice')), [])

    def test_duplicate_identity_from_partial_run(self):
        self.lifecycle.provision('alice')
        line = [l for l in read(self.alice_jail_passwd).splitlines() if l.startswith('alice:')][0]
        with open(self.alice_jail_passwd, 'a') as f:
            f.write(line + '\n')
        self.lifecycle.provision('alice')
        names = [l.split(':')[0] for l in read(self.alice_jail_passwd).splitlines()]
        self.assertEqual(names.count('alice'), 1)

    def test_mount_failure_reverts_shell(self):
        self.kernel.fail = True
        with self.assertRaises(MountError):
            self.lifecycle.provision('alice')
        self.assertEqual(self.shell_of('alice'), '/bin/bash')
        self.assertFalse(self.fstab.has_destination(self.alice_jail_home))

    def test_failure_of_jailed_account_reverts_shell(self):
        self.lifecycle.provision('alice')
        self.kernel.mounted.clear()
        self.kernel.fail = True
        outcomes = self.lifecycle.provision_all(['alice'])
        self.assertFalse(outcomes[0].ok)
        self.assertEqual(self.shell_of('alice'), '/bin/bash')

    def test_missing_home_is_accepted(self):
        shutil.rmtree(self.alice_home)
        with self.assertLogs('sitejail.userjail', 'WARNING') as cm:
            self.assertEqual(self.lifecycle.provision('alice'), JailState.JAILED)
        self.assertTrue(any('empty root' in line for line in cm.output))
        self.assertEqual(self.kernel.calls, [])
        self.assertEqual(self.shell_of('alice'), self.confined)
        self.assertTrue(os.path.isdir(self.alice_jail_home))

    def test_jailkit_home_artifact_is_not_copied_into_jail(self):
        artifact = self.config.user_jail('alice') + '/.' + self.path('home/alice')
        write(self.config.passwd_path, read(self.config.passwd_path).replace(
            ':{}:'.format(self.alice_home), ':{}:'.format(artifact)))
        self.lifecycle.provision('alice')
        self.assertEqual(self.home_of('alice', self.alice_jail_passwd), self.alice_home)
        # the system record's home belongs to repair, not to provisioning
        self.assertEqual(self.home_of('alice'), artifact)


class OrchestratorTest(JailTestCase):
    def fake_useradd(self, username, home, shell):
        write(home + '/.profile', '')
        with open(self.config.passwd_path, 'a') as f:
            f.write('{0}:x:1002:1002::{1}:{2}\n'.format(username, home, shell))
        with open(self.config.group_path, 'a') as f:
            f.write('{0}:x:1002:\n'.format(username))

    def test_site_scenario(self):
        with mock.patch('sitejail.userjail.create_account', side_effect=self.fake_useradd) as useradd:
            outcomes = self.lifecycle.provision_all(['alice', 'bob', ''])

        self.assertEqual([(o.username, o.ok) for o in outcomes],
                         [('alice', True), ('bob', True), ('', False)])
        useradd.assert_called_once_with('bob', self.path('home/bob'), self.config.confined_shell)
        self.assertEqual(self.shell_of('bob'), self.config.confined_shell)
        self.assertEqual(self.kernel.mounted[self.jail_home('bob')], self.path('home/bob'))
        self.assertEqual(sorted(os.listdir(self.config.jail_root)), ['.base', 'alice', 'bob'])

        # bob was created confined, so releasing him falls back to the normal shell
        self.lifecycle.release('bob')
        self.assertEqual(self.shell_of('bob'), '/bin/bash')

    def test_invalid_names_touch_nothing(self):
        passwd = read(self.config.passwd_path)
        with mock.patch('sitejail.userjail.create_account') as useradd:
            with self.assertLogs('sitejail.lifecycle', 'WARNING'):
                outcomes = self.lifecycle.provision_all(['Alice', '1bob', 'a;reboot', '../etc', 'alice\n'])
        self.assertFalse(any(o.ok for o in outcomes))
        useradd.assert_not_called()
        self.assertEqual(self.kernel.calls, [])
        self.assertEqual(read(self.config.passwd_path), passwd)
        self.assertEqual(os.listdir(self.config.jail_root), ['.base'])

    def test_failure_does_not_stop_the_run(self):
        real_bind = self.mounts.bind
        seen = []

        def flaky_bind(src, dst, persistent=False):
            seen.append(dst)
            if len(seen) == 1:
                raise MountError('Failed mounting: mount --bind {} {}'.format(src, dst))
            return real_bind(src, dst, persistent)

        with mock.patch.object(self.mounts, 'bind', side_effect=flaky_bind):
            with self.assertLogs('sitejail.lifecycle', 'ERROR'):
                outcomes = self.lifecycle.provision_all(['alice', 'carol'])
        self.assertEqual([o.ok for o in outcomes], [False, True])
        self.assertEqual(self.shell_of('alice'), '/bin/bash')
        self.assertEqual(self.shell_of('carol'), self.config.confined_shell)

    def test_malformed_record_does_not_stop_the_run(self):
        with open(self.config.passwd_path, 'a') as f:
            f.write('dave:x:abc:1004::{}:/bin/bash\n'.format(self.path('home/dave')))
        write(self.path('home/dave/htdocs/index.html'), '<h1>dave</h1>\n')
        with self.assertLogs('sitejail.lifecycle', 'ERROR'):
            outcomes = self.lifecycle.provision_all(['dave', 'alice'])
        self.assertEqual([(o.username, o.ok) for o in outcomes], [('dave', False), ('alice', True)])
        self.assertEqual(self.shell_of('dave'), '/bin/bash')
        self.assertEqual(list(self.kernel.mounted), [self.jail_home('alice')])

    def test_not_root(self):
        self.geteuid.return_value = 1000
        with self.assertRaises(PrivilegeError):
            self.lifecycle.provision_all(['alice'])
        self.assertFalse(os.path.exists(self.config.jail_root))

    def test_missing_confined_shell(self):
        os.remove(self.config.confined_shell)
        with self.assertRaises(DependencyMissing):
            self.lifecycle.provision_all(['alice'])

    def test_release_all(self):
        self.lifecycle.provision_all(['alice', 'carol'])
        outcomes = self.lifecycle.release_all(['alice', 'carol', 'nosuchuser'])
        self.assertEqual([o.ok for o in outcomes], [True, True, False])
        self.assertEqual(self.kernel.mounted, {})
        self.assertEqual(read(self.config.fstab_path), FSTAB)


class RepairTest(JailTestCase):
    def break_alice(self):
        self.lifecycle.provision('alice')
        self.kernel.mounted.clear()
        artifact = self.config.user_jail('alice') + '/.' + self.path('home/alice')
        write(self.config.passwd_path, read(self.config.passwd_path).replace(
            ':{}:'.format(self.path('home/alice')), ':{}:'.format(artifact)))

    def test_broken_is_detected(self):
        self.break_alice()
        self.assertEqual(self.lifecycle.state('alice'), JailState.BROKEN)

    def test_repair_to_unjailed(self):
        self.break_alice()
        outcomes = self.lifecycle.repair_all(['alice'])
        self.assertTrue(outcomes[0].ok)
        self.assertEqual(outcomes[0].state, JailState.UNJAILED)
        self.assertEqual(self.home_of('alice'), self.path('home/alice'))
        self.assertEqual(self.shell_of('alice'), '/bin/bash')
        self.assertEqual(read(self.config.fstab_path), FSTAB)
        self.assertTrue(os.path.isdir(self.config.user_jail('alice')))

    def test_repair_gives_home_back_to_user(self):
        self.break_alice()
        os.chmod(self.path('home/alice'), 0o700)
        self.chown.reset_mock()
        self.lifecycle.repair('alice')
        self.assertIn(mock.call(self.path('home/alice'), 1001, 1001, follow_symlinks=False),
                      self.chown.call_args_list)
        self.assertEqual(os.stat(self.path('home/alice')).st_mode & 0o777, 0o755)

    def test_repair_and_rejail(self):
        self.break_alice()
        outcomes = self.lifecycle.repair_all(['alice'], rejail=True)
        self.assertEqual(outcomes[0].state, JailState.JAILED)
        self.assertEqual(self.lifecycle.state('alice'), JailState.JAILED)

    def test_repair_leaves_plain_home_alone(self):
        self.lifecycle.repair('carol')
        self.assertEqual(self.home_of('carol'), self.path('home/carol'))
        self.assertEqual(self.shell_of('carol'), '/bin/zsh')


if __name__ == '__main__':
    unittest.main()
