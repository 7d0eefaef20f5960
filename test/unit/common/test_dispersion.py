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

import json
import os
import unittest
from shutil import rmtree
from tempfile import mkdtemp

from eventlet.event import Event
from eventlet.queue import LightQueue

from ringkeeper.common import dispersion
from ringkeeper.common.cluster import ClusterContext
from ringkeeper.common.exceptions import QueueStoreError
from ringkeeper.common.queue_store import ReplicationQueueStore, \
    SqliteReplicationQueueStore, QueuedReplication
from ringkeeper.common.ring import Ring
from ringkeeper.common.storage_policy import StoragePolicy, \
    StoragePolicyCollection

from test.debug_logger import debug_logger
from test.unit import write_fake_ring


class FakeRing(object):
    """Four partitions, none of which any name ever hashes to."""

    def __init__(self, cancel, attempts):
        self.cancel = cancel
        self.attempts = attempts
        self.calls = 0

    def get_part_nodes(self, part):
        if part < 4:
            return []
        return None

    def get_part(self, *path):
        self.calls += 1
        if self.calls >= self.attempts and not self.cancel.ready():
            self.cancel.send()
        return -1


class TestDispersionNames(unittest.TestCase):

    def setUp(self):
        self.testdir = mkdtemp()
        self.ring_file = os.path.join(self.testdir, 'object.ring.gz')
        write_fake_ring(self.ring_file)
        self.ring = Ring(self.ring_file)

    def tearDown(self):
        rmtree(self.testdir, ignore_errors=True)

    def _assert_one_name_per_partition(self, names, container, prefix):
        self.assertEqual(self.ring.partition_count, len(names))
        self.assertEqual(len(names), len(set(names)))
        partitions = set()
        for name in names:
            self.assertTrue(name.startswith(prefix))
            partition = int(name[len(prefix):].split('-')[0])
            if container:
                got = self.ring.get_part(dispersion.ADMIN_ACCOUNT,
                                         container, name)
            else:
                got = self.ring.get_part(dispersion.ADMIN_ACCOUNT, name)
            self.assertEqual(partition, got)
            partitions.add(partition)
        self.assertEqual(set(range(self.ring.partition_count)), partitions)

    def test_object_container_name(self):
        self.assertEqual('disp-objs-0', dispersion.object_container_name(0))
        self.assertEqual('disp-objs-12',
                         dispersion.object_container_name('12'))

    def test_container_names(self):
        names = dispersion.collect_dispersion_names(
            '', dispersion.CONTAINER_PREFIX, self.ring)
        self._assert_one_name_per_partition(
            names, '', dispersion.CONTAINER_PREFIX)

    def test_object_names(self):
        container = dispersion.object_container_name(0)
        names = dispersion.collect_dispersion_names(
            container, '', self.ring, workers=3)
        self._assert_one_name_per_partition(names, container, '')

    def test_worker_count_does_not_change_names(self):
        one = dispersion.collect_dispersion_names(
            '', dispersion.CONTAINER_PREFIX, self.ring, workers=1)
        many = dispersion.collect_dispersion_names(
            '', dispersion.CONTAINER_PREFIX, self.ring, workers=8)
        self.assertEqual(sorted(one), sorted(many))

    def test_end_marker(self):
        names = LightQueue()
        dispersion.generate_dispersion_names(
            '', dispersion.CONTAINER_PREFIX, self.ring, names, workers=2)
        got = [names.get() for _ in range(5)]
        self.assertIsNone(got[-1])
        self.assertNotIn(None, got[:-1])
        self.assertTrue(names.empty())

    def test_cancel_before_start(self):
        cancel = Event()
        cancel.send()
        self.assertEqual([], dispersion.collect_dispersion_names(
            '', dispersion.CONTAINER_PREFIX, self.ring, cancel=cancel))

    def test_cancel_while_searching(self):
        cancel = Event()
        ring = FakeRing(cancel, dispersion.ATTEMPTS_PER_YIELD * 3)
        names = LightQueue()
        dispersion.generate_dispersion_names(
            '', dispersion.CONTAINER_PREFIX, ring, names, cancel=cancel,
            workers=2)
        self.assertTrue(cancel.ready())
        self.assertIsNone(names.get())
        self.assertTrue(names.empty())
        # the workers stopped soon after the cancel
        self.assertLess(ring.calls, dispersion.ATTEMPTS_PER_YIELD * 3 + 2)


class TestFormatting(unittest.TestCase):

    def test_format_duration(self):
        self.assertEqual('0s', dispersion.format_duration(0))
        self.assertEqual('0s', dispersion.format_duration(-3))
        self.assertEqual('5s', dispersion.format_duration(5.9))
        self.assertEqual('4m0s', dispersion.format_duration(240))
        self.assertEqual('1h0m0s', dispersion.format_duration(3600))
        self.assertEqual('1h2m3s', dispersion.format_duration(3723))
        self.assertEqual('26h0m1s', dispersion.format_duration(93601))


class TestInnerDispersionReport(unittest.TestCase):

    def test_never_scanned(self):
        inner = dispersion.InnerDispersionReport(4, 2, 'gold')
        self.assertTrue(inner.passed)
        self.assertEqual(
            'No known dispersion scan has been run.\n'
            'There are 4 partitions configured for 2 copies.\n',
            inner.render(now=1200.0))

    def test_scan_running(self):
        inner = dispersion.InnerDispersionReport(4, 2)
        inner.start = 1000.0
        self.assertEqual(
            'Last dispersion scan started 1970-01-01 00:16 and has yet to '
            'complete after 3m20s.\n'
            'There are 4 partitions configured for 2 copies.\n'
            'All partition copies were in place when last checked.\n',
            inner.render(now=1200.0))

    def test_scan_complete_with_missing(self):
        inner = dispersion.InnerDispersionReport(1024, 3)
        inner.start = 1000.0
        inner.complete = 1100.0
        inner.add_missing(7, dispersion.DispersionMissing(
            1050.0, '10.0.0.1:6200', 'sda'))
        inner.add_missing(9, dispersion.DispersionMissing(
            1050.0, '10.0.0.1:6200', 'sda'))
        inner.add_missing(9, dispersion.DispersionMissing(
            1060.0, '10.0.0.2:6200', 'sdb'))
        inner.add_missing(11, dispersion.DispersionMissing(
            1070.0, '10.0.0.2:6200', 'sdb'))
        inner.count_of_services_with_errors = 1
        inner.count_of_devices_with_errors = 2
        self.assertFalse(inner.passed)
        self.assertEqual({1: 2, 2: 1}, inner.missing_histogram())
        self.assertEqual(
            'Last dispersion scan ran from 1970-01-01 00:16 to '
            '1970-01-01 00:18 (1m40s ago for 1m40s).\n'
            'There are 1024 partitions configured for 3 copies.\n'
            '! 2 partitions were missing 1 copy.\n'
            '! 1 partition was missing 2 copies.\n'
            '!! 1 service has been giving errors which may skew the '
            'report.\n'
            '!! 2 devices have been giving errors which may skew the '
            'report.\n',
            inner.render(now=1200.0))

    def test_to_dict(self):
        inner = dispersion.InnerDispersionReport(4, 2, 'gold')
        inner.start = 1.0
        inner.add_missing(3, dispersion.DispersionMissing(
            2.0, '127.0.0.1:6200', 'sdb1'))
        self.assertEqual({
            'policy_name': 'gold',
            'start': 1.0,
            'complete': None,
            'total_partitions': 4,
            'replica_count': 2,
            'partitions': {'3': [{'time': 2.0, 'service': '127.0.0.1:6200',
                                  'device': 'sdb1'}]},
            'count_of_services_with_errors': 0,
            'count_of_devices_with_errors': 0,
            'errors': [],
            'pass': False,
        }, inner.to_dict())


class BrokenProcessPassStore(ReplicationQueueStore):

    def __init__(self, queued=()):
        self.queued = list(queued)

    def queued_replications(self, ring_type, policy_index, tag):
        return list(self.queued)

    def count_of_services_with_errors(self, ring_type, policy_index):
        return 2

    def count_of_devices_with_errors(self, ring_type, policy_index):
        return 0

    def process_pass(self, process, ring_type, policy_index):
        raise QueueStoreError('no pass table')

    def __str__(self):
        return 'broken-store'


class TestDispersionReport(unittest.TestCase):

    def setUp(self):
        self.testdir = mkdtemp()
        for ring_name in ('container', 'object', 'object-1'):
            write_fake_ring(os.path.join(self.testdir,
                                         '%s.ring.gz' % ring_name))
        self.policies = StoragePolicyCollection([
            StoragePolicy(0, 'gold', is_default=True),
            StoragePolicy(1, 'silver')])
        self.store = SqliteReplicationQueueStore(':memory:')
        self.logger = debug_logger()

    def tearDown(self):
        self.store.close()
        rmtree(self.testdir, ignore_errors=True)

    def _context(self, store=None):
        if store is None:
            store = self.store
        return ClusterContext(self.testdir, policies=self.policies,
                              queue_store=store)

    def test_empty_queue_passes(self):
        for ring_type, index in (('container', 0), ('object', 0),
                                 ('object', 1)):
            self.store.start_pass(dispersion.DISPERSION_PASS, ring_type,
                                  index, timestamp=10.0)
            self.store.complete_pass(dispersion.DISPERSION_PASS, ring_type,
                                     index, timestamp=20.0)
        report = dispersion.get_dispersion_report(self._context(),
                                                  self.logger)
        self.assertTrue(report.passed)
        self.assertEqual([], report.errors)
        self.assertEqual(10.0, report.container_report.start)
        self.assertEqual(20.0, report.container_report.complete)
        self.assertEqual([0, 1], sorted(report.object_reports))
        self.assertEqual('gold', report.object_reports[0].policy_name)
        self.assertEqual('silver', report.object_reports[1].policy_name)
        for inner in [report.container_report] + list(
                report.object_reports.values()):
            self.assertEqual(4, inner.total_partitions)
            self.assertEqual(2, inner.replica_count)
            self.assertTrue(inner.passed)
        self.assertEqual(['Dispersion report: pass, 0 errors'],
                         self.logger.get_lines_for_level('info'))

    def test_missing_copy_fails(self):
        self.store.queue_replication('object', 1, 2, 1,
                                     dispersion.DISPERSION_TAG,
                                     timestamp=15.0)
        self.store.queue_replication('object', 1, 3, 7,
                                     dispersion.DISPERSION_TAG,
                                     timestamp=16.0)
        # replications queued for other reasons are not dispersion problems
        self.store.queue_replication('object', 0, 1, 1, 'rebalance')
        report = dispersion.get_dispersion_report(self._context(),
                                                  self.logger)
        self.assertFalse(report.passed)
        self.assertEqual([], report.errors)
        self.assertTrue(report.container_report.passed)
        self.assertTrue(report.object_reports[0].passed)
        inner = report.object_reports[1]
        self.assertEqual([2, 3], sorted(inner.partitions))
        missing = inner.partitions[2][0]
        self.assertEqual(15.0, missing.timestamp)
        self.assertEqual('127.0.0.1:6200', missing.service)
        self.assertEqual('sdb1', missing.device)
        # a device the ring does not know
        missing = inner.partitions[3][0]
        self.assertEqual(('unknown', 'unknown'),
                         (missing.service, missing.device))
        self.assertEqual(['Dispersion report: fail, 0 errors'],
                         self.logger.get_lines_for_level('info'))

    def test_not_initialized_pass(self):
        self.store.start_pass(
            dispersion.DISPERSION_PASS, 'container', 0,
            progress='container' + dispersion.NOT_INITIALIZED_SUFFIX,
            timestamp=10.0)
        report = dispersion.get_dispersion_report(self._context(),
                                                  self.logger)
        self.assertIsNone(report.container_report.start)
        self.assertIsNone(report.container_report.complete)

    def test_ring_load_error(self):
        os.unlink(os.path.join(self.testdir, 'object-1.ring.gz'))
        with open(os.path.join(self.testdir, 'object.ring.gz'), 'wb') as fd:
            fd.write(b'not a ring')
        report = dispersion.get_dispersion_report(self._context(),
                                                  self.logger)
        self.assertFalse(report.passed)
        self.assertEqual(2, len(report.errors))
        self.assertTrue(report.errors[0].startswith(
            'Unable to load object ring for policy 0: '))
        self.assertTrue(report.errors[1].startswith(
            'Unable to load object ring for policy 1: '))
        # the container ring is still reported
        self.assertIsNotNone(report.container_report)
        self.assertEqual({}, report.object_reports)
        self.assertEqual(2, len(self.logger.get_lines_for_level('error')))

    def test_no_queue_store(self):
        report = dispersion.get_dispersion_report(
            ClusterContext(self.testdir, policies=self.policies),
            self.logger)
        self.assertFalse(report.passed)
        self.assertEqual(['No replication queue store configured'] * 3,
                         report.errors)
        self.assertFalse(report.container_report.passed)
        self.assertEqual(['No replication queue store configured'],
                         report.container_report.errors)
        self.assertEqual(4, report.container_report.total_partitions)
        self.assertEqual([0, 1], sorted(report.object_reports))

    def test_failed_query_is_recorded(self):
        store = BrokenProcessPassStore(
            queued=[QueuedReplication(1, 0, 5.0)])
        report = dispersion.get_dispersion_report(self._context(store),
                                                  self.logger)
        self.assertFalse(report.passed)
        self.assertEqual(['no pass table'] * 3, report.errors)
        # the other queries still ran
        inner = report.object_reports[1]
        self.assertIsNone(inner.start)
        self.assertFalse(inner.passed)
        self.assertEqual(['no pass table'], inner.errors)
        self.assertEqual(2, inner.count_of_services_with_errors)
        self.assertEqual([1], list(inner.partitions))
        self.assertEqual('sda1', inner.partitions[1][0].device)
        error_lines = self.logger.get_lines_for_level('error')
        self.assertEqual(3, len(error_lines))
        self.assertEqual(
            'Error querying broken-store for object policy 1: '
            'no pass table', error_lines[-1])

    def test_query_error_fails_sub_report(self):
        report = dispersion.get_dispersion_report(
            self._context(BrokenProcessPassStore()), self.logger)
        inner = report.container_report
        # nothing is missing, but the scan progress could not be read
        self.assertEqual({}, inner.partitions)
        self.assertFalse(inner.passed)
        self.assertEqual(['no pass table'], inner.errors)
        as_dict = inner.to_dict()
        self.assertFalse(as_dict['pass'])
        self.assertEqual(['no pass table'], as_dict['errors'])

    def test_render_and_to_dict(self):
        self.store.queue_replication('container', 0, 0, 0,
                                     dispersion.DISPERSION_TAG,
                                     timestamp=15.0)
        report = dispersion.get_dispersion_report(self._context(),
                                                  self.logger)
        report.time = 0.0
        rendered = report.render(now=100.0)
        self.assertTrue(rendered.startswith(
            '[1970-01-01 00:00:00] Dispersion Report\n'))
        self.assertIn('\nContainer Dispersion Report\n'
                      'No known dispersion scan has been run.\n'
                      'There are 4 partitions configured for 2 copies.\n'
                      '! 1 partition was missing 1 copy.\n', rendered)
        self.assertIn('\nObject Dispersion Report for Policy: 0 gold\n',
                      rendered)
        self.assertIn('\nObject Dispersion Report for Policy: 1 silver\n',
                      rendered)
        as_dict = json.loads(json.dumps(report.to_dict()))
        self.assertEqual('Dispersion Report', as_dict['name'])
        self.assertFalse(as_dict['pass'])
        self.assertEqual(['0', '1'], sorted(as_dict['object_reports']))
        self.assertEqual(
            [{'time': 15.0, 'service': '127.0.0.1:6200', 'device': 'sda1'}],
            as_dict['container_report']['partitions']['0'])

    def test_add_error(self):
        report = dispersion.DispersionReport(timestamp=0.0)
        self.assertTrue(report.passed)
        report.add_error(ValueError('bad'))
        self.assertFalse(report.passed)
        self.assertEqual(['bad'], report.errors)
        self.assertEqual('[1970-01-01 00:00:00] Dispersion Report\n'
                         '!! bad\n', str(report))


if __name__ == '__main__':
    unittest.main()
