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
import errno
import itertools
import logging
import math
import os
import pickle
import uuid

from array import array
from collections import defaultdict
from contextlib import contextmanager
from time import time

from ringkeeper.common import exceptions
from ringkeeper.common.ring.ring import RingData
from ringkeeper.common.ring.utils import tiers_for_dev, build_tier_tree, \
    validate_and_normalize_address, validate_device_name, validate_port, \
    SEARCH_KEYS, ADDRESS_KEYS
from ringkeeper.common.utils import write_pickle

# marks an unassigned slot in the unsigned short assignment table
NONE_DEV = 2 ** 16 - 1
MAX_BALANCE = 999.99
MAX_PART_POWER = 32
INFO_FIELDS = ('ip', 'port', 'replication_ip', 'replication_port', 'device',
               'meta')
# attributes persisted in a builder file, in to_dict() order
BUILDER_FIELDS = ('part_power', 'replicas', 'min_part_hours', 'parts',
                  'devs', 'devs_changed', 'version', 'overload',
                  '_replica2part2dev', '_last_part_moves', '_remove_devs')
# bookkeeping keys that never make it into a RingData device dict
BUILDER_ONLY_DEV_KEYS = ('parts', 'parts_wanted', 'tiers')


class RingBuilder(object):
    """
    Holds the device list and partition assignment of one ring while it is
    being edited, and produces the :class:`RingData` written to disk.

    Device edits (add, weight, info, remove) only mark the builder as
    changed; partitions move on :meth:`rebalance`. ``devs_changed`` tells
    callers whether there is anything new to rebalance.

    :param part_power: the ring has 2 ** part_power partitions
    :param replicas: replica count, may be fractional
    :param min_part_hours: hours a moved partition must stay put
    """

    def __init__(self, part_power, replicas, min_part_hours):
        if not 0 <= part_power <= MAX_PART_POWER:
            raise ValueError("part_power must be between 0 and %d (was %d)"
                             % (MAX_PART_POWER, part_power))
        self._check_replicas(replicas)
        self._check_min_part_hours(min_part_hours)

        self.part_power = part_power
        self.replicas = replicas
        self.min_part_hours = min_part_hours
        self.parts = 2 ** self.part_power
        self.devs = []
        self.devs_changed = False
        self.version = 0
        self.overload = 0.0
        self._id = None

        # replica -> partition -> device id, one array('H') per replica;
        # the last one is short when replicas is fractional
        self._replica2part2dev = None

        # per partition, the unix time it last moved
        self._last_part_moves = self._fresh_part_moves()

        self._remove_devs = []
        self._ring = None

        self.logger = logging.getLogger("ringkeeper.ring.builder")
        if not self.logger.handlers:
            self.logger.disabled = True
            self.logger.addHandler(logging.NullHandler())

    def _fresh_part_moves(self):
        return array('I', itertools.repeat(0, self.parts))

    @staticmethod
    def _check_replicas(replicas):
        if replicas < 1:
            raise ValueError("replicas must be at least 1 (was %.6f)"
                             % (replicas,))

    @staticmethod
    def _check_min_part_hours(min_part_hours):
        if min_part_hours < 0:
            raise ValueError("min_part_hours must be non-negative (was %d)"
                             % (min_part_hours,))

    def _touch(self, devs_changed=True):
        """Record an edit: bump the version and drop the cached ring."""
        if devs_changed:
            self.devs_changed = True
        self.version += 1
        self._ring = None

    @classmethod
    def create(cls, builder_file, part_power, replicas, min_part_hours):
        """
        Create a new, empty builder and persist it at ``builder_file``.

        :raises RingBuilderError: if a builder already exists at that path
        :raises ValueError: if any of the ring parameters is out of range
        """
        if os.path.exists(builder_file):
            raise exceptions.RingBuilderError(
                'Ring Builder file already exists: %s' % builder_file)
        builder = cls(part_power, replicas, min_part_hours)
        builder.save(builder_file)
        return builder

    @property
    def id(self):
        if self._id is None:
            raise AttributeError(
                'id attribute has not been initialised by calling save()')
        return self._id

    @property
    def part_shift(self):
        return 32 - self.part_power

    @property
    def ever_rebalanced(self):
        return self._replica2part2dev is not None

    @contextmanager
    def debug(self):
        """
        Let the builder logger through for the duration of the block::

            with rb.debug():
                rb.rebalance()
        """
        self.logger.disabled = False
        try:
            yield
        finally:
            self.logger.disabled = True

    @property
    def min_part_seconds_left(self):
        """Seconds until the most recently moved partition may move again."""
        if not self._last_part_moves:
            return 0
        since_last_move = int(time()) - max(self._last_part_moves)
        return max(self.min_part_hours * 3600 - since_last_move, 0)

    def weight_of_one_part(self):
        """
        Partition replicas owed per unit of device weight.

        :raises EmptyRingError: if no device carries any weight
        """
        total_weight = sum(d['weight'] for d in self._iter_devs())
        if not total_weight:
            raise exceptions.EmptyRingError('There are no devices in this '
                                            'ring, or all devices have been '
                                            'deleted')
        return self.parts * self.replicas / total_weight

    @classmethod
    def from_dict(cls, builder_data):
        builder = cls(1, 1, 1)
        builder.copy_from(builder_data)
        return builder

    def copy_from(self, builder_data):
        """
        Overwrite this builder with the state saved by :meth:`to_dict`.
        Files from before overload and move times were tracked are
        accepted.
        """
        for field in BUILDER_FIELDS:
            setattr(self, field, builder_data.get(field))
        if self.overload is None:
            self.overload = 0.0
        if self._last_part_moves is None:
            self._last_part_moves = self._fresh_part_moves()
        if self._remove_devs is None:
            self._remove_devs = []
        self._id = builder_data.get('id')
        self._ring = None

    def to_dict(self):
        """The picklable state of the builder, see :meth:`copy_from`."""
        state = dict((field, getattr(self, field))
                     for field in BUILDER_FIELDS)
        state['id'] = self._id
        return state

    def change_min_part_hours(self, min_part_hours):
        """
        Set how long, in hours, a partition must stay on its devices after
        a move before a rebalance may move it again. Moves forced by
        removed or zero weight devices ignore this.
        """
        self._check_min_part_hours(min_part_hours)
        self.min_part_hours = min_part_hours

    def set_replicas(self, new_replica_count):
        """
        Change the replica count. Only when the number of partition
        replicas (parts * replicas, rounded down) changes is the builder
        marked as changed, since only then does the next rebalance have
        work to do.
        """
        self._check_replicas(new_replica_count)
        if int(self.parts * self.replicas) != \
                int(self.parts * new_replica_count):
            self.devs_changed = True
        self.replicas = new_replica_count

    def set_overload(self, overload):
        if overload < 0:
            raise ValueError("overload must be non-negative (was %s)"
                             % (overload,))
        self.overload = overload

    def get_ring(self):
        """
        The :class:`RingData` for the current assignment, built once and
        cached until the next edit or rebalance. Removed device ids are
        left as None holes and builder bookkeeping keys are dropped.
        """
        if not self._ring:
            devs = [None] * len(self.devs)
            for dev in self._iter_devs():
                devs[dev['id']] = dict(
                    (k, v) for k, v in dev.items()
                    if k not in BUILDER_ONLY_DEV_KEYS)
            rows = [array('H', p2d) for p2d in self._replica2part2dev or []]
            self._ring = RingData(rows, devs, self.part_shift,
                                  version=self.version)
        return self._ring

    def write_ring(self, ring_file):
        """
        Validate the assignment and write it out as a ring file.

        :param ring_file: path of the ``.ring.gz`` file to write
        :raises RingValidationError: if any partition is unassigned or
                                     doubly assigned
        """
        self.validate()
        self.get_ring().save(ring_file)

    def _check_dev_values(self, dev):
        """
        Validate and normalize the identity fields of ``dev`` in place.
        """
        for key in ('region', 'zone'):
            if not isinstance(dev[key], int) or dev[key] < 0:
                raise ValueError('%s must be a non-negative integer (was %r)'
                                 % (key, dev[key]))
        dev['ip'] = validate_and_normalize_address(dev['ip'])
        dev['port'] = validate_port(dev['port'])
        if dev.get('replication_ip') is None:
            dev['replication_ip'] = dev['ip']
        else:
            dev['replication_ip'] = validate_and_normalize_address(
                dev['replication_ip'])
        if dev.get('replication_port') is None:
            dev['replication_port'] = dev['port']
        else:
            dev['replication_port'] = validate_port(dev['replication_port'])
        if not isinstance(dev['device'], str) or \
                not validate_device_name(dev['device']):
            raise ValueError('Invalid device name %r' % (dev['device'],))
        dev['weight'] = self._check_weight(dev['weight'])

    @staticmethod
    def _check_weight(weight):
        try:
            weight = float(weight)
        except (TypeError, ValueError):
            raise ValueError('Invalid weight %r' % (weight,))
        if weight < 0 or math.isnan(weight) or math.isinf(weight):
            raise ValueError('Weight must be a non-negative number (was %r)'
                             % (weight,))
        return weight

    def _check_duplicate_address(self, ip, port, device, ignore_ids=()):
        for dev in self._iter_devs():
            if dev['id'] in ignore_ids:
                continue
            if (dev['ip'], dev['port'], dev['device']) == (ip, port, device):
                raise exceptions.DuplicateDeviceError(
                    'Device %d already uses %s:%d/%s.' % (
                        dev['id'], ip, port, device))

    def add_dev(self, region, zone, ip, port, device, weight,
                replication_ip=None, replication_port=None, meta='',
                id=None):
        """
        Add a device. Partitions are only placed on it by the next
        :meth:`rebalance`, so several edits can share one rebalance.

        :param region: region number
        :param zone: zone number within the region
        :param ip: ip address or hostname of the storage server
        :param port: tcp port of the storage server
        :param device: name of the disk on the server, e.g. sdb1
        :param weight: capacity relative to the other devices
        :param replication_ip: defaults to ``ip``
        :param replication_port: defaults to ``port``
        :param meta: free form notes
        :param id: device id, defaults to the lowest free id
        :returns: the device id
        :raises ValueError: if any field is invalid, e.g. a negative weight
        :raises DuplicateDeviceError: if the id or the ip/port/device triple
                                      is already in use
        """
        dev = {'region': region, 'zone': zone, 'ip': ip, 'port': port,
               'replication_ip': replication_ip,
               'replication_port': replication_port, 'device': device,
               'weight': weight, 'meta': meta or ''}
        self._check_dev_values(dev)
        if id is None:
            id = self.devs.index(None) if None in self.devs \
                else len(self.devs)
        if id < 0 or id >= NONE_DEV:
            raise ValueError('Invalid device id %r' % (id,))
        if id < len(self.devs) and self.devs[id] is not None:
            raise exceptions.DuplicateDeviceError(
                'Duplicate device id: %d' % id)
        self._check_duplicate_address(dev['ip'], dev['port'], dev['device'])
        dev['id'] = id
        dev['parts'] = 0
        # devs is indexed by id, pad any gap with None
        self.devs.extend([None] * (id + 1 - len(self.devs)))
        self.devs[id] = dev
        self._touch()
        return id

    def _get_dev(self, dev_id):
        if not 0 <= dev_id < len(self.devs) or self.devs[dev_id] is None:
            raise exceptions.DeviceNotFoundError(
                'Unknown device id %r' % (dev_id,))
        return self.devs[dev_id]

    def _is_removing(self, dev_id):
        return any(dev_id == d['id'] for d in self._remove_devs)

    def set_dev_weight(self, dev_id, weight):
        """Shorthand for :meth:`set_weight` on a single device."""
        self.set_weight([dev_id], weight)

    def set_weight(self, dev_ids, weight):
        """
        Set the weight of several devices at once. Every device id and the
        weight are checked before any device is changed.

        :param dev_ids: iterable of device ids
        :param weight: new weight for the devices
        :raises DeviceNotFoundError: if a device id is unknown
        :raises ValueError: if the weight is invalid or a device is marked
                            for removal
        """
        weight = self._check_weight(weight)
        devs = [self._get_dev(dev_id) for dev_id in dev_ids]
        for dev in devs:
            if self._is_removing(dev['id']):
                raise ValueError("Can not set weight of dev_id %s because it "
                                 "is marked for removal" % (dev['id'],))
        for dev in devs:
            dev['weight'] = weight
        self._touch()

    def set_info(self, dev_ids, changes):
        """
        Change the address, device name or meta of several devices at once.
        Every change is validated for every device before any device is
        altered.

        :param dev_ids: iterable of device ids
        :param changes: dict with any of the keys ip, port, replication_ip,
                        replication_port, device, meta
        :raises DeviceNotFoundError: if a device id is unknown
        :raises DuplicateDeviceError: if a change would make two devices
                                      share an ip/port/device
        :raises ValueError: if a change is invalid
        """
        unknown = set(changes) - set(INFO_FIELDS)
        if unknown:
            raise ValueError('Can not change %s' % ', '.join(sorted(unknown)))
        changes = dict(changes)
        for key in ('ip', 'replication_ip'):
            if key in changes:
                changes[key] = validate_and_normalize_address(changes[key])
        for key in ('port', 'replication_port'):
            if key in changes:
                changes[key] = validate_port(changes[key])
        if 'device' in changes and not validate_device_name(
                changes['device']):
            raise ValueError('Invalid device name %r' % (changes['device'],))

        devs = [self._get_dev(dev_id) for dev_id in dev_ids]
        changing_ids = set(dev['id'] for dev in devs)
        proposed = []
        for dev in devs:
            new_dev = dict(dev, **changes)
            key = (new_dev['ip'], new_dev['port'], new_dev['device'])
            if key in proposed:
                raise exceptions.DuplicateDeviceError(
                    'Device %d would share %s:%d/%s with another changed '
                    'device.' % ((dev['id'],) + key))
            proposed.append(key)
            self._check_duplicate_address(*key, ignore_ids=changing_ids)

        for dev in devs:
            dev.update(changes)
        self._touch()

    def remove_dev(self, dev_id):
        """Shorthand for :meth:`remove_devs` on a single device."""
        self.remove_devs([dev_id])

    def remove_devs(self, dev_ids):
        """
        Mark several devices for removal. Their partitions are handed to
        other devices, and their ids freed, on the next rebalance.

        :param dev_ids: iterable of device ids
        :raises DeviceNotFoundError: if a device id is unknown
        :raises ValueError: if a device is already marked for removal
        """
        devs = [self._get_dev(dev_id) for dev_id in dev_ids]
        for dev in devs:
            if self._is_removing(dev['id']):
                raise ValueError('Device %d is already marked for removal'
                                 % dev['id'])
        for dev in devs:
            dev['weight'] = 0
            self._remove_devs.append(dev)
        self._touch()

    def rebalance(self):
        """
        Move partitions so every device holds its weighted share while the
        replicas of each partition stay spread across regions, zones and
        servers. See :class:`RingRebalancer` for the steps.

        :returns: (partitions moved, balance afterwards, devices removed)
        """
        # rebalance works on the builder's internals, so it imports us
        from ringkeeper.common.ring.rebalance import RingRebalancer
        changed_parts, removed_devs = RingRebalancer(self).rebalance()
        self.devs_changed = False
        self._touch(devs_changed=False)
        return changed_parts, self.get_balance(), removed_devs

    def _part_lengths_ok(self):
        """
        Every replica row covers all partitions except the last, which may
        be short when the replica count is fractional.
        """
        full_rows = int(math.ceil(self.replicas)) - 1
        for replica, part2dev in enumerate(self._replica2part2dev):
            if replica < full_rows and len(part2dev) < self.parts:
                raise exceptions.RingValidationError(
                    "The partition assignments of replica %r were "
                    "shorter than expected (%s < %s) - this should "
                    "only happen for the last replica" % (
                        replica, len(part2dev), self.parts))

    def validate(self, stats=False):
        """
        Check the assignment for builder bugs: every partition replica on
        a live device, no partition twice on one device, and per-device
        part counts that add up to the table.

        :param stats: also work out how far the worst device is from its
                      weighted share
        :returns: (parts per device id, worst skew in percent) with
                  ``stats``, otherwise (None, None)
        :raises RingValidationError: on the first problem found
        """
        if not self._replica2part2dev:
            raise exceptions.RingValidationError(
                '_replica2part2dev empty; did you forget to rebalance?')

        parts_on_devs = sum(d['parts'] for d in self._iter_devs())
        parts_in_map = sum(len(p2d) for p2d in self._replica2part2dev)
        if parts_on_devs != parts_in_map:
            raise exceptions.RingValidationError(
                'All partitions are not double accounted for: %d != %d' %
                (parts_on_devs, parts_in_map))
        self._part_lengths_ok()

        dev_usage = array('I', itertools.repeat(0, len(self.devs)))
        for part in range(self.parts):
            dev_ids = []
            for replica in self._replicas_for_part(part):
                dev_id = self._replica2part2dev[replica][part]
                if dev_id >= len(self.devs) or not self.devs[dev_id]:
                    raise exceptions.RingValidationError(
                        "Partition %d, replica %d was not allocated "
                        "to a device." % (part, replica))
                dev_ids.append(dev_id)
                dev_usage[dev_id] += 1
            if len(dev_ids) != len(set(dev_ids)):
                raise exceptions.RingValidationError(
                    "The partition %s has been assigned to "
                    "duplicate devices %r" % (part, dev_ids))

        if not stats:
            return None, None
        weight_of_one_part = self.weight_of_one_part()
        worst = 0
        for dev in self._iter_devs():
            used = dev_usage[dev['id']]
            if not dev['weight']:
                if used:
                    # partitions on a weightless device can't be expressed
                    # as a percentage
                    return dev_usage, MAX_BALANCE
                continue
            worst = max(worst, abs(
                100.0 * used / (dev['weight'] * weight_of_one_part) - 100.0))
        return dev_usage, worst

    def _build_balance_per_dev(self):
        """
        Map each weighted device id to how far its part count is from its
        weighted share, in percent (positive means too many).
        """
        weight_of_one_part = self.weight_of_one_part()
        return dict(
            (dev['id'], 100.0 * dev['parts'] /
             (dev['weight'] * weight_of_one_part) - 100.0)
            for dev in self._iter_devs() if dev['weight'])

    def get_balance(self):
        """
        The largest percentage by which any weighted device misses its
        share. A device wanting 123 partitions but holding 124 gives 0.81.
        """
        return max(abs(b) for b in self._build_balance_per_dev().values())

    def get_dispersion(self):
        """
        Get the percentage of partitions that have more replicas in some
        region, zone, server or device than the layout allows. 0 means every
        partition is as spread out as it can be.
        """
        if not self._replica2part2dev:
            return 0.0
        max_replicas = self._build_max_replicas_by_tier()
        at_risk = 0
        for part in range(self.parts):
            replicas_at_tier = defaultdict(int)
            for dev in self._devs_for_part(part):
                for tier in tiers_for_dev(dev):
                    replicas_at_tier[tier] += 1
            if any(count > max_replicas[tier]
                   for tier, count in replicas_at_tier.items()):
                at_risk += 1
        return 100.0 * at_risk / self.parts

    def _build_max_replicas_by_tier(self):
        """
        How many replicas of one partition each tier may hold when the
        replicas are spread as evenly as the weighted devices allow.

        The root ``()`` holds the replica count rounded up. Each child of a
        tier may hold its parent's limit divided by the number of children,
        rounded up, and a single device never holds more than one. With
        three replicas on four single-device zones in region 1::

            {(): 3, (1,): 3, (1, 1): 1, (1, 1, '127.0.0.1'): 1,
             (1, 1, '127.0.0.1', 0): 1, (1, 2): 1, ...}

        Unknown tiers map to 0.
        """
        children = build_tier_tree(
            d for d in self._iter_devs() if d['weight'])
        max_replicas = defaultdict(int)
        todo = [((), int(math.ceil(self.replicas)))]
        while todo:
            tier, limit = todo.pop()
            if len(tier) == 4:
                limit = min(limit, 1)
            max_replicas[tier] = limit
            subtiers = children.get(tier)
            if subtiers:
                sublimit = int(math.ceil(float(limit) / len(subtiers)))
                todo.extend((subtier, sublimit) for subtier in subtiers)
        return max_replicas

    def pretend_min_part_hours_passed(self):
        """
        Forget when partitions last moved, so the next rebalance may move
        any of them.
        """
        self._last_part_moves = self._fresh_part_moves()

    def get_part_devices(self, part):
        """
        The devices holding ``part``, each listed once, in replica order.
        """
        devices = []
        for dev in self._devs_for_part(part):
            if dev not in devices:
                devices.append(dev)
        return devices

    def _iter_devs(self):
        """Every device that exists; removed ids are None in ``devs``."""
        return (dev for dev in self.devs if dev is not None)

    def _devs_for_part(self, part):
        """
        Device dicts for each assigned replica of ``part``, duplicates
        included.
        """
        if self._replica2part2dev is None:
            return []
        return [self.devs[self._replica2part2dev[replica][part]]
                for replica in self._replicas_for_part(part)
                if self._replica2part2dev[replica][part] != NONE_DEV]

    def _replicas_for_part(self, part):
        """
        The replica rows long enough to hold ``part``.
        """
        return [replica for replica, part2dev
                in enumerate(self._replica2part2dev)
                if part < len(part2dev)]

    @classmethod
    def load(cls, builder_file, open=open):
        """
        Read a builder file written by :meth:`save`.

        :raises FileNotFoundError: if there is no such file
        :raises PermissionError: if the file cannot be read
        :raises UnPicklingError: if the file is not a builder file
        """
        try:
            fp = open(builder_file, 'rb')
        except IOError as e:
            if e.errno == errno.ENOENT:
                raise exceptions.FileNotFoundError(
                    'Ring Builder file does not exist: %s' % builder_file)
            if e.errno in (errno.EPERM, errno.EACCES):
                raise exceptions.PermissionError(
                    'Ring Builder file cannot be accessed: %s' % builder_file)
            raise
        with fp:
            try:
                builder_dict = pickle.load(fp)
            except Exception:
                raise exceptions.UnPicklingError(
                    'Ring Builder file is invalid: %s' % builder_file)
        if not isinstance(builder_dict, dict) or 'devs' not in builder_dict:
            raise exceptions.UnPicklingError(
                'Ring Builder file is invalid: %s' % builder_file)

        builder = cls.from_dict(builder_dict)
        for dev in builder._iter_devs():
            dev.setdefault('meta', '')
            dev.setdefault('replication_ip', dev['ip'])
            dev.setdefault('replication_port', dev['port'])
        return builder

    def save(self, builder_file):
        """
        Pickle the builder to ``builder_file``. A builder gets its id on
        its first save; if that save fails the id is dropped again.
        """
        new_id = self._id is None
        if new_id:
            self._id = uuid.uuid4().hex
        try:
            write_pickle(self.to_dict(), builder_file, pickle_protocol=2)
        except Exception:
            if new_id:
                self._id = None
            raise

    @staticmethod
    def _dev_matches(dev, search_values):
        for key in SEARCH_KEYS:
            value = search_values.get(key)
            if value is None:
                continue
            if key == 'meta':
                if value not in dev.get('meta', ''):
                    return False
            elif key in ADDRESS_KEYS:
                try:
                    address = validate_and_normalize_address(
                        dev.get(key, ''))
                except ValueError:
                    address = ''
                if address != value:
                    return False
            elif dev.get(key) != value:
                return False
        return True

    def search_devs(self, search_values):
        """
        Devices matching every given filter. ``meta`` matches as a
        substring, addresses after normalization, everything else exactly.
        Devices marked for removal never match; no filters match all the
        other devices.

        :param search_values: dict keyed by any of id, region, zone, ip,
                              port, replication_ip, replication_port,
                              device, weight, meta
        :returns: list of device dicts
        """
        removing = set(d['id'] for d in self._remove_devs)
        return [dev for dev in self._iter_devs()
                if dev['id'] not in removing and
                self._dev_matches(dev, search_values)]
