# Copyright (c) 2010-2012 OpenStack Foundation
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or
# implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import io
import json
import os
import shutil
import tempfile
import unittest
from textwrap import dedent
from unittest import mock

from ringkeeper.cli import dispersion_names, dispersion_report
from ringkeeper.common.dispersion import ADMIN_ACCOUNT, DISPERSION_PASS, \
    DISPERSION_TAG, CONTAINER_PREFIX
from ringkeeper.common.queue_store import SqliteReplicationQueueStore
from ringkeeper.common.ring import Ring

from test.unit import write_fake_ring


class DispersionCliTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.conf_file = os.path.join(self.tmpdir, 'dispersion.conf')
        with open(self.conf_file, 'w') as fd:
            fd.write(dedent('''
            [dispersion]
            swift_dir = %s
            queue_db = queue.db
            db_timeout = 1
            ''' % self.tmpdir))
        for ring_name in ('container', 'object'):
            write_fake_ring(os.path.join(self.tmpdir,
                                         '%s.ring.gz' % ring_name))
        self.store = SqliteReplicationQueueStore(
            os.path.join(self.tmpdir, 'queue.db'), okay_to_create=True)
        for ring_type in ('container', 'object'):
            self.store.start_pass(DISPERSION_PASS, ring_type, 0,
                                  timestamp=1000.0)
            self.store.complete_pass(DISPERSION_PASS, ring_type, 0,
                                     timestamp=1100.0)

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.tmpdir, True)

    def run_main(self, main, *args):
        mock_stdout = io.StringIO()
        with mock.patch('sys.stdout', mock_stdout):
            with self.assertRaises(SystemExit) as cm:
                main(list(args))
        return cm.exception.code, mock_stdout.getvalue()


@mock.patch('ringkeeper.cli.dispersion_report.hubs', mock.MagicMock())
@mock.patch('ringkeeper.cli.dispersion_report.patcher', mock.MagicMock())
class TestDispersionReport(DispersionCliTestCase):

    def test_pass(self):
        code, out = self.run_main(dispersion_report.main, self.conf_file)
        self.assertEqual(0, code)
        self.assertIn('] Dispersion Report\n', out)
        self.assertIn('\nContainer Dispersion Report\n'
                      'Last dispersion scan ran from 1970-01-01 00:16 to '
                      '1970-01-01 00:18', out)
        self.assertIn('\nObject Dispersion Report for Policy: 0 Policy-0\n',
                      out)
        self.assertIn('All partition copies were in place when last '
                      'checked.', out)

    def test_fail(self):
        self.store.queue_replication('object', 0, 1, 0, DISPERSION_TAG,
                                     timestamp=1050.0)
        code, out = self.run_main(dispersion_report.main, self.conf_file)
        self.assertEqual(1, code)
        self.assertIn('! 1 partition was missing 1 copy.', out)

    def test_dump_json(self):
        self.store.queue_replication('container', 0, 2, 1, DISPERSION_TAG,
                                     timestamp=1050.0)
        code, out = self.run_main(dispersion_report.main, '-j',
                                  self.conf_file)
        self.assertEqual(1, code)
        report = json.loads(out)
        self.assertFalse(report['pass'])
        self.assertEqual([], report['errors'])
        self.assertEqual(
            [{'time': 1050.0, 'service': '127.0.0.1:6200', 'device': 'sdb1'}],
            report['container_report']['partitions']['2'])
        self.assertEqual({}, report['object_reports']['0']['partitions'])

    def test_dump_json_from_conf(self):
        with open(self.conf_file, 'a') as fd:
            fd.write('dump_json = yes\n')
        code, out = self.run_main(dispersion_report.main, self.conf_file)
        self.assertEqual(0, code)
        self.assertTrue(json.loads(out)['pass'])

    def test_missing_queue_db(self):
        self.store.close()
        os.unlink(os.path.join(self.tmpdir, 'queue.db'))
        code, out = self.run_main(dispersion_report.main, self.conf_file)
        self.assertEqual(1, code)
        self.assertIn("!! DB connection error", out)
        self.assertFalse(os.path.exists(
            os.path.join(self.tmpdir, 'queue.db')))

    def test_missing_ring(self):
        os.unlink(os.path.join(self.tmpdir, 'object.ring.gz'))
        code, out = self.run_main(dispersion_report.main, self.conf_file)
        self.assertEqual(1, code)
        self.assertIn('!! Unable to load object ring for policy 0: ', out)
        self.assertIn('Container Dispersion Report', out)
        self.assertNotIn('Object Dispersion Report', out)

    def test_bad_conf_file(self):
        code, out = self.run_main(dispersion_report.main,
                                  os.path.join(self.tmpdir, 'nope.conf'))
        self.assertTrue(code.startswith('Unable to read config file: '))
        with open(self.conf_file, 'w') as fd:
            fd.write('[other]\nfoo = bar\n')
        code, out = self.run_main(dispersion_report.main, self.conf_file)
        self.assertIn('Unable to find dispersion config section', code)

    def test_bad_cluster_conf(self):
        with open(os.path.join(self.tmpdir, 'ringkeeper.conf'), 'w') as fd:
            fd.write('[storage-policy:0]\nname = a\n'
                     '[storage-policy:1]\nname = b\n')
        code, out = self.run_main(dispersion_report.main, self.conf_file)
        self.assertTrue(code.startswith('Unable to set up cluster: '))
        self.assertIn('Unable to find default policy', code)

    def test_policies_from_cluster_conf(self):
        write_fake_ring(os.path.join(self.tmpdir, 'object-3.ring.gz'))
        with open(os.path.join(self.tmpdir, 'ringkeeper.conf'), 'w') as fd:
            fd.write('[storage-policy:0]\nname = gold\ndefault = yes\n'
                     '[storage-policy:3]\nname = bronze\n')
        code, out = self.run_main(dispersion_report.main, self.conf_file)
        self.assertEqual(0, code)
        self.assertIn('Object Dispersion Report for Policy: 0 gold', out)
        self.assertIn('Object Dispersion Report for Policy: 3 bronze\n'
                      'No known dispersion scan has been run.', out)

    def test_monkey_patches(self):
        with mock.patch('ringkeeper.cli.dispersion_report.patcher') as \
                mock_patcher:
            self.run_main(dispersion_report.main, self.conf_file)
        mock_patcher.monkey_patch.assert_called_once_with()


class TestDispersionNames(DispersionCliTestCase):

    def setUp(self):
        super(TestDispersionNames, self).setUp()
        self.ring = Ring(self.tmpdir, ring_name='container')

    def test_print_names(self):
        names = mock.MagicMock()
        names.get.side_effect = ['a', 'b', 'c', None]
        with mock.patch('sys.stdout', io.StringIO()) as mock_stdout:
            self.assertEqual(3, dispersion_names.print_names(names))
        self.assertEqual('a\nb\nc\n', mock_stdout.getvalue())
        names.get.side_effect = ['a', 'b', 'c', None]
        with mock.patch('sys.stdout', io.StringIO()) as mock_stdout:
            self.assertEqual(2, dispersion_names.print_names(names, limit=2))
        self.assertEqual('a\nb\n', mock_stdout.getvalue())

    def test_container_names(self):
        code, out = self.run_main(dispersion_names.main, self.conf_file)
        self.assertEqual(0, code)
        names = out.splitlines()
        self.assertEqual(4, len(names))
        partitions = set()
        for name in names:
            self.assertTrue(name.startswith(CONTAINER_PREFIX))
            partition = self.ring.get_part(ADMIN_ACCOUNT, name)
            self.assertEqual(
                partition, int(name[len(CONTAINER_PREFIX):].split('-')[0]))
            partitions.add(partition)
        self.assertEqual({0, 1, 2, 3}, partitions)

    def test_object_names(self):
        code, out = self.run_main(dispersion_names.main, '-P', '0', '-w',
                                  '2', self.conf_file)
        self.assertEqual(0, code)
        names = out.splitlines()
        self.assertEqual(4, len(names))
        ring = Ring(self.tmpdir, ring_name='object')
        self.assertEqual(
            {0, 1, 2, 3},
            set(ring.get_part(ADMIN_ACCOUNT, 'disp-objs-0', name)
                for name in names))

    def test_limit(self):
        code, out = self.run_main(dispersion_names.main, '--limit', '2',
                                  self.conf_file)
        self.assertEqual(0, code)
        self.assertEqual(2, len(out.splitlines()))

    def test_errors(self):
        code, out = self.run_main(dispersion_names.main, '-P', '5',
                                  self.conf_file)
        self.assertEqual('Unknown storage policy index: 5', code)
        code, out = self.run_main(dispersion_names.main, '-w', '0',
                                  self.conf_file)
        self.assertTrue(code.startswith('Unable to load ring: '))
        os.unlink(os.path.join(self.tmpdir, 'container.ring.gz'))
        code, out = self.run_main(dispersion_names.main, self.conf_file)
        self.assertTrue(code.startswith('Unable to load ring: '))
        code, out = self.run_main(dispersion_names.main,
                                  os.path.join(self.tmpdir, 'nope.conf'))
        self.assertTrue(code.startswith('Unable to read config file: '))
        self.assertEqual('', out)


if __name__ == '__main__':
    unittest.main()
