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

"""
Dispersion auditing.

A dispersion scan places one probe container (and, per storage policy, one
probe object) in every partition of a ring and queues a replication tagged
``dispersion`` for each copy it cannot find. This module finds the probe
names and turns the queue backlog into a report.
"""

import os
import time

import eventlet
from eventlet import GreenPool, Timeout
from eventlet.queue import LightQueue

from ringkeeper.common.utils import get_logger

DISPERSION_TAG = 'dispersion'
DISPERSION_PASS = 'dispersion scan'
#: progress marker a scanner leaves before its first pass has initialized
NOT_INITIALIZED_SUFFIX = '-init does not yet exist'
ADMIN_ACCOUNT = '.admin'
CONTAINER_PREFIX = 'disp-conts-'
OBJECT_CONTAINER_PREFIX = 'disp-objs-'
#: hash attempts a name worker makes before yielding to the other workers
ATTEMPTS_PER_YIELD = 64


def object_container_name(policy_index):
    """The container holding the probe objects of a storage policy."""
    return '%s%d' % (OBJECT_CONTAINER_PREFIX, int(policy_index))


def generate_dispersion_names(container, prefix, ring, names, cancel=None,
                              workers=None):
    """
    Put one name per partition of ``ring`` into ``names``; the name hashes
    to that partition under the ``.admin`` account.

    Pass an empty ``container`` to generate container names; otherwise
    object names within ``container`` are generated. Usual calls are::

        generate_dispersion_names('', 'disp-conts-', container_ring,
                                  names, cancel)
        generate_dispersion_names('disp-objs-1', '', object_ring,
                                  names, cancel)

    Partitions are split over ``workers`` green threads (one per CPU by
    default), worker ``k`` handling partitions ``k``, ``k + workers``, and
    so on. The workers are eventlet green threads sharing one OS thread, so
    the hashing itself is not parallel; the split keeps a slow partition
    from holding up the others and lets a consumer or a cancel run in
    between attempts. Names arrive in no particular order. Once every
    worker is done, ``None`` is put into ``names`` to mark the end.

    :param container: probe container, or '' for container names
    :param prefix: start of every generated name
    :param ring: a :class:`~ringkeeper.common.ring.Ring`
    :param names: queue receiving the names, e.g. an
                  ``eventlet.queue.LightQueue``
    :param cancel: ``eventlet.event.Event``; once sent, the workers stop at
                   the next partition or attempt
    :param workers: number of green threads
    """
    if workers is None:
        workers = os.cpu_count() or 1

    def cancelled():
        return cancel is not None and cancel.ready()

    def find_names(first_partition):
        partition = first_partition
        while not cancelled():
            if ring.get_part_nodes(partition) is None:
                return
            attempt = 0
            while True:
                if cancelled():
                    return
                name = '%s%d-%d' % (prefix, partition, attempt)
                if container:
                    gen_part = ring.get_part(ADMIN_ACCOUNT, container, name)
                else:
                    gen_part = ring.get_part(ADMIN_ACCOUNT, name)
                if gen_part == partition:
                    names.put(name)
                    break
                attempt += 1
                if attempt % ATTEMPTS_PER_YIELD == 0:
                    eventlet.sleep()
            partition += workers
            eventlet.sleep()

    pool = GreenPool(workers)
    try:
        for worker in range(workers):
            pool.spawn_n(find_names, worker)
        pool.waitall()
    finally:
        names.put(None)


def collect_dispersion_names(container, prefix, ring, cancel=None,
                             workers=None):
    """
    Run :func:`generate_dispersion_names` to completion and return the
    names found as a list.
    """
    names = LightQueue()
    generate_dispersion_names(container, prefix, ring, names, cancel=cancel,
                              workers=workers)
    found = []
    while True:
        name = names.get()
        if name is None:
            break
        found.append(name)
    return found


def format_duration(seconds):
    """
    Format whole seconds the way ``1h2m3s``, ``4m0s`` or ``5s`` reads.
    """
    seconds = int(max(seconds, 0))
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return '%dh%dm%ds' % (hours, minutes, seconds)
    if minutes:
        return '%dm%ds' % (minutes, seconds)
    return '%ds' % seconds


def _format_time(timestamp, fmt='%Y-%m-%d %H:%M'):
    return time.strftime(fmt, time.gmtime(timestamp))


class DispersionMissing(object):
    """
    One copy of a probe that was not where the ring puts it.

    :param timestamp: when the replication was queued
    :param service: ``ip:port`` of the device's server
    :param device: device name
    """

    def __init__(self, timestamp, service, device):
        self.timestamp = timestamp
        self.service = service
        self.device = device

    @classmethod
    def from_queued(cls, queued, ring):
        devs = ring.devs
        dev_id = queued.destination_device_id
        dev = devs[dev_id] if 0 <= dev_id < len(devs) else None
        if dev is None:
            return cls(queued.timestamp, 'unknown', 'unknown')
        return cls(queued.timestamp, '%s:%d' % (dev['ip'], dev['port']),
                   dev['device'])

    def __repr__(self):
        return '%s(%r, %r, %r)' % (self.__class__.__name__, self.timestamp,
                                   self.service, self.device)

    def to_dict(self):
        return {'time': self.timestamp, 'service': self.service,
                'device': self.device}


class InnerDispersionReport(object):
    """
    Dispersion of the container ring or of one storage policy's object
    ring.

    ``start`` and ``complete`` are unix times of the last dispersion scan;
    ``None`` for a scan that never ran or has not completed.
    ``partitions`` maps a partition to its list of
    :class:`DispersionMissing`.
    ``errors`` lists the queries of this ring that failed; a sub-report
    with errors does not pass.
    """

    def __init__(self, total_partitions, replica_count, policy_name=''):
        self.policy_name = policy_name
        self.start = None
        self.complete = None
        self.total_partitions = total_partitions
        self.replica_count = replica_count
        self.partitions = {}
        self.count_of_services_with_errors = 0
        self.count_of_devices_with_errors = 0
        self.errors = []

    def add_missing(self, partition, missing):
        self.partitions.setdefault(partition, []).append(missing)

    @property
    def passed(self):
        return not self.partitions and not self.errors

    def missing_histogram(self):
        """
        :returns: dict of number of missing copies -> number of partitions
        """
        counts = {}
        for missing in self.partitions.values():
            counts[len(missing)] = counts.get(len(missing), 0) + 1
        return counts

    def render(self, now=None):
        if now is None:
            now = time.time()
        lines = []
        if not self.start:
            lines.append('No known dispersion scan has been run.')
        elif not self.complete:
            lines.append(
                'Last dispersion scan started %s and has yet to complete '
                'after %s.' % (_format_time(self.start),
                               format_duration(now - self.start)))
        else:
            lines.append(
                'Last dispersion scan ran from %s to %s (%s ago for %s).' % (
                    _format_time(self.start), _format_time(self.complete),
                    format_duration(now - self.complete),
                    format_duration(self.complete - self.start)))
        lines.append('There are %d partitions configured for %d copies.' % (
            self.total_partitions, self.replica_count))
        if self.start and not self.partitions:
            lines.append('All partition copies were in place when last '
                         'checked.')
        else:
            for copies, count in sorted(self.missing_histogram().items()):
                if count == 1:
                    line = '! 1 partition was missing '
                else:
                    line = '! %d partitions were missing ' % count
                if copies == 1:
                    line += '1 copy.'
                else:
                    line += '%d copies.' % copies
                lines.append(line)
        for count, what in ((self.count_of_services_with_errors, 'service'),
                            (self.count_of_devices_with_errors, 'device')):
            if count == 1:
                lines.append('!! 1 %s has been giving errors which may skew '
                             'the report.' % what)
            elif count > 1:
                lines.append('!! %d %ss have been giving errors which may '
                             'skew the report.' % (count, what))
        return '\n'.join(lines) + '\n'

    def __str__(self):
        return self.render()

    def to_dict(self):
        return {
            'policy_name': self.policy_name,
            'start': self.start,
            'complete': self.complete,
            'total_partitions': self.total_partitions,
            'replica_count': self.replica_count,
            'partitions': dict(
                (str(part), [m.to_dict() for m in missing])
                for part, missing in sorted(self.partitions.items())),
            'count_of_services_with_errors':
                self.count_of_services_with_errors,
            'count_of_devices_with_errors': self.count_of_devices_with_errors,
            'errors': list(self.errors),
            'pass': self.passed,
        }


class DispersionReport(object):
    """
    The dispersion of every ring in the cluster. ``object_reports`` maps a
    policy index to its :class:`InnerDispersionReport`.
    """

    name = 'Dispersion Report'

    def __init__(self, timestamp=None):
        self.time = time.time() if timestamp is None else timestamp
        self.passed = True
        self.errors = []
        self.container_report = None
        self.object_reports = {}

    def add_error(self, error):
        self.errors.append(str(error))
        self.passed = False

    def render(self, now=None):
        out = '[%s] %s\n' % (_format_time(self.time, '%Y-%m-%d %H:%M:%S'),
                             self.name)
        for error in self.errors:
            out += '!! %s\n' % error
        if self.container_report is not None:
            out += '\nContainer Dispersion Report\n%s' % (
                self.container_report.render(now))
        for index in sorted(self.object_reports):
            object_report = self.object_reports[index]
            out += '\nObject Dispersion Report for Policy: %d %s\n%s' % (
                index, object_report.policy_name, object_report.render(now))
        return out

    def __str__(self):
        return self.render()

    def to_dict(self):
        return {
            'name': self.name,
            'time': self.time,
            'pass': self.passed,
            'errors': list(self.errors),
            'container_report': (self.container_report.to_dict()
                                 if self.container_report else None),
            'object_reports': dict(
                (str(index), inner.to_dict())
                for index, inner in sorted(self.object_reports.items())),
        }


def _build_inner_report(context, report, ring_type, policy_index, logger,
                        policy_name=''):
    """
    Build the sub-report of one ring. Any failure is added to the errors
    of the sub-report and of ``report``; a ring that cannot be loaded
    yields no sub-report at all.
    """
    try:
        ring = context.get_ring(ring_type, policy_index)
    except (Exception, Timeout) as err:
        logger.error('Unable to load %s ring for policy %d: %s',
                     ring_type, policy_index, err)
        report.add_error('Unable to load %s ring for policy %d: %s' % (
            ring_type, policy_index, err))
        return None
    inner = InnerDispersionReport(ring.partition_count,
                                  int(ring.replica_count),
                                  policy_name=policy_name)
    store = context.queue_store
    if store is None:
        inner.errors.append('No replication queue store configured')
        report.add_error('No replication queue store configured')
        return inner

    def query(call, *args):
        try:
            return call(*args)
        except (Exception, Timeout) as err:
            logger.error('Error querying %s for %s policy %d: %s',
                         store, ring_type, policy_index, err)
            inner.errors.append(str(err))
            report.add_error(err)
            return None

    process_pass = query(store.process_pass, DISPERSION_PASS, ring_type,
                         policy_index)
    if process_pass is not None:
        inner.start = process_pass.start
        inner.complete = process_pass.complete
        if (process_pass.progress or '').endswith(NOT_INITIALIZED_SUFFIX):
            inner.start = inner.complete = None
    services = query(store.count_of_services_with_errors, ring_type,
                     policy_index)
    if services is not None:
        inner.count_of_services_with_errors = services
    devices = query(store.count_of_devices_with_errors, ring_type,
                    policy_index)
    if devices is not None:
        inner.count_of_devices_with_errors = devices
    queued = query(store.queued_replications, ring_type, policy_index,
                   DISPERSION_TAG)
    for queued_replication in queued or []:
        inner.add_missing(queued_replication.partition,
                          DispersionMissing.from_queued(queued_replication,
                                                        ring))
        report.passed = False
    return inner


def get_dispersion_report(context, logger=None):
    """
    Report on the dispersion backlog of the container ring and every
    object storage policy's ring of a cluster. Policies are reported one
    after another; an error with one ring is recorded and the remaining
    rings are still reported.

    :param context: a :class:`~ringkeeper.common.cluster.ClusterContext`
    :param logger: logger for the errors met
    :returns: a :class:`DispersionReport`
    """
    if logger is None:
        logger = get_logger({}, log_route='dispersion-report')
    report = DispersionReport()
    report.container_report = _build_inner_report(
        context, report, 'container', 0, logger)
    for index in context.policies.indexes():
        policy = context.policies.get_by_index(index)
        inner = _build_inner_report(context, report, 'object', index, logger,
                                    policy_name=policy.name)
        if inner is not None:
            report.object_reports[index] = inner
    if report.errors:
        report.passed = False
    logger.info('Dispersion report: %s, %d errors',
                'pass' if report.passed else 'fail', len(report.errors))
    return report
