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
Partition placement for the ring builder.

A rebalance runs in phases. Replicas are first gathered from devices that
must give them up regardless of min_part_hours (removed or zero-weight
devices, and replicas that crowd a region, zone, server or device beyond its
share). Those replicas are placed, and then a few rounds of gathering from
devices holding more than their overload allowance follow, touching only
partitions whose cooldown has passed.
"""

import itertools
import math

from array import array
from collections import defaultdict
from time import time

from ringkeeper.common import exceptions
from ringkeeper.common.ring.builder import NONE_DEV
from ringkeeper.common.ring.utils import build_tier_tree, tiers_for_dev

MAX_BALANCE_GATHER_COUNT = 3


class RingRebalancer(object):
    """
    Reassigns the partitions of one
    :class:`~ringkeeper.common.ring.builder.RingBuilder`. An instance is good
    for a single :meth:`rebalance` call; it works directly on the builder's
    devices and replica table.

    :param builder: the RingBuilder to rebalance
    """

    def __init__(self, builder):
        self.builder = builder
        self.logger = builder.logger
        self.targets = {}
        self.allowed = {}
        self.max_replicas = {}
        self._moved = None
        self._original = {}
        self._now = None

    def rebalance(self):
        """
        Run one rebalance over the builder.

        :returns: (number_of_partitions_altered, number_of_removed_devices)
        :raises EmptyRingError: if the total weight of the ring is zero
        :raises RingValidationError: if there are fewer weighted devices than
                                     a partition has replicas
        """
        builder = self.builder
        weighted = [d for d in builder._iter_devs() if d['weight'] > 0]
        if not weighted:
            raise exceptions.EmptyRingError(
                'There are no devices in this ring, or all devices have been '
                'deleted')
        if len(weighted) < int(math.ceil(builder.replicas)):
            raise exceptions.RingValidationError(
                'Replica count of %(replicas)s requires more than %(devs)d '
                'devices with weight' % {'replicas': builder.replicas,
                                         'devs': len(weighted)})

        for dev in builder._iter_devs():
            dev['tiers'] = tiers_for_dev(dev)
            dev.setdefault('parts', 0)
        self._now = int(time())
        self._moved = bytearray(builder.parts)
        self._original = {}

        to_assign = defaultdict(list)
        self._adjust_replica2part2dev_size(to_assign)
        self._gather_from_unusable_devs(to_assign)
        removed_devs = self._free_removed_devs()
        self._build_targets(weighted)
        self._gather_for_dispersion(to_assign)
        self._reassign_parts(to_assign)

        for gather_count in range(MAX_BALANCE_GATHER_COUNT):
            if not self._overweight_devs():
                break
            to_assign = defaultdict(list)
            self._gather_for_balance(to_assign)
            if not to_assign:
                self.logger.debug('No movable partitions left on overweight '
                                  'devices after %d rounds', gather_count)
                break
            self._reassign_parts(to_assign, for_balance=True)

        changed_parts = 0
        for part, moved in enumerate(self._moved):
            if moved:
                builder._last_part_moves[part] = self._now
                changed_parts += 1
        for dev in builder._iter_devs():
            dev.pop('tiers', None)
        self.logger.debug('Rebalance moved %d partitions, removed %d devices',
                          changed_parts, removed_devs)
        return changed_parts, removed_devs

    def _adjust_replica2part2dev_size(self, to_assign):
        """
        Make sure that the lengths of the arrays in _replica2part2dev
        are correct for the current value of builder.replicas.

        Example:
        builder.part_power = 8
        builder.replicas = 2.25

        builder._replica2part2dev will contain 3 arrays: the first 2 of
        length 256 (2**8), and the last of length 64 (0.25 * 2**8).

        Update the mapping of partition => [replicas] that need assignment.
        """
        builder = self.builder
        fractional_replicas, whole_replicas = math.modf(builder.replicas)
        whole_replicas = int(whole_replicas)
        removed_parts = 0
        new_parts = 0

        desired_lengths = [builder.parts] * whole_replicas
        if fractional_replicas:
            desired_lengths.append(int(builder.parts * fractional_replicas))

        if builder._replica2part2dev is not None:
            # If we crossed an integer threshold (say, 4.1 --> 4),
            # we'll have a partial extra replica clinging on here. Clean
            # up any such extra stuff.
            for part2dev in builder._replica2part2dev[len(desired_lengths):]:
                for dev_id in part2dev:
                    self._drop_slot(dev_id)
                    removed_parts += 1
            builder._replica2part2dev = \
                builder._replica2part2dev[:len(desired_lengths)]
        else:
            builder._replica2part2dev = []

        for replica, desired_length in enumerate(desired_lengths):
            if replica < len(builder._replica2part2dev):
                part2dev = builder._replica2part2dev[replica]
                if len(part2dev) < desired_length:
                    # Not long enough: needs to be extended and the
                    # newly-added pieces assigned to devices.
                    for part in range(len(part2dev), desired_length):
                        to_assign[part].append(replica)
                        part2dev.append(NONE_DEV)
                        new_parts += 1
                elif len(part2dev) > desired_length:
                    # Too long: truncate this mapping.
                    for part in range(desired_length, len(part2dev)):
                        self._drop_slot(part2dev[part])
                        removed_parts += 1
                    builder._replica2part2dev[replica] = \
                        part2dev[:desired_length]
            else:
                # Mapping not present at all: make one up and assign
                # all of it.
                for part in range(desired_length):
                    to_assign[part].append(replica)
                    new_parts += 1
                builder._replica2part2dev.append(
                    array('H', itertools.repeat(NONE_DEV, desired_length)))

        self.logger.debug(
            "%d new parts and %d removed parts from replica-count change",
            new_parts, removed_parts)

    def _drop_slot(self, dev_id):
        if dev_id == NONE_DEV:
            return
        dev = self.builder.devs[dev_id]
        if dev is not None:
            dev['parts'] -= 1

    def _unassign(self, part, replica, to_assign):
        part2dev = self.builder._replica2part2dev[replica]
        dev_id = part2dev[part]
        self._original.setdefault((part, replica), dev_id)
        self._drop_slot(dev_id)
        part2dev[part] = NONE_DEV
        to_assign[part].append(replica)

    def _assign(self, part, replica, dev):
        self.builder._replica2part2dev[replica][part] = dev['id']
        dev['parts'] += 1
        if self._original.get((part, replica)) != dev['id']:
            self._moved[part] = 1

    def _can_part_move(self, part):
        if self._moved[part]:
            return False
        elapsed = self._now - self.builder._last_part_moves[part]
        return elapsed >= self.builder.min_part_hours * 3600

    def _gather_from_unusable_devs(self, to_assign):
        """
        Gather every replica sitting on a removed or zero-weight device.
        These move no matter how recently they last moved.
        """
        builder = self.builder
        gathered = 0
        for replica, part2dev in enumerate(builder._replica2part2dev):
            for part, dev_id in enumerate(part2dev):
                if dev_id == NONE_DEV:
                    continue
                dev = builder.devs[dev_id] if dev_id < len(builder.devs) \
                    else None
                if dev is None or not dev['weight']:
                    self._unassign(part, replica, to_assign)
                    gathered += 1
        self.logger.debug("Gathered %d parts from removed or zero-weight "
                          "devices", gathered)

    def _free_removed_devs(self):
        builder = self.builder
        removed_devs = 0
        for dev in builder._remove_devs:
            self.logger.debug("Removing dev %d", dev['id'])
            dev.pop('tiers', None)
            builder.devs[dev['id']] = None
            removed_devs += 1
        builder._remove_devs = []
        return removed_devs

    def _gather_for_dispersion(self, to_assign):
        """
        Gather replicas that put more copies of their partition in a region,
        zone, server or device than that tier may hold. Failure-domain
        violations move regardless of min_part_hours.

        Of the replicas crowding a tier, the one on the device wanting parts
        the least gives way first, so the crowded devices shrink towards
        their targets together.
        """
        builder = self.builder
        max_replicas = self.max_replicas
        gathered = 0
        for part in range(builder.parts):
            replicas_at_tier = defaultdict(int)
            for dev in builder._devs_for_part(part):
                for tier in dev['tiers']:
                    replicas_at_tier[tier] += 1
            while True:
                crowded = []
                for replica in builder._replicas_for_part(part):
                    dev_id = builder._replica2part2dev[replica][part]
                    if dev_id == NONE_DEV:
                        continue
                    dev = builder.devs[dev_id]
                    if any(replicas_at_tier[tier] > max_replicas[tier]
                           for tier in dev['tiers']):
                        # later replicas give way first on a tie
                        crowded.append(
                            (self._parts_wanted(dev), -replica, replica, dev))
                if not crowded:
                    break
                _wanted, _order, replica, dev = min(
                    crowded, key=lambda c: c[:2])
                for tier in dev['tiers']:
                    replicas_at_tier[tier] -= 1
                self._unassign(part, replica, to_assign)
                gathered += 1
        self.logger.debug("Gathered %d parts for dispersion", gathered)

    def _build_replicas_by_tier(self, weighted):
        """
        Share the replica count of a partition out over the tier tree.

        Every tier gets a share of its parent's replicas in proportion to
        its weight, but never more than the tier may hold for the ring to
        stay dispersed; what a capped tier cannot take goes to its siblings.
        Only when the siblings are capped as well does a tier take more than
        its dispersed limit, up to one replica per device it holds.

        :returns: dict of tier => replicas (a float) for every tier
        """
        tier2children = build_tier_tree(weighted)
        tier_weight = defaultdict(float)
        tier_devs = defaultdict(int)
        for dev in weighted:
            for tier in ((),) + dev['tiers']:
                tier_weight[tier] += dev['weight']
                tier_devs[tier] += 1
        max_replicas = self.max_replicas

        def fill(amount, children, assigned, limit):
            active = [c for c in children if assigned[c] < limit(c)]
            while amount > 1e-9 and active:
                total = sum(tier_weight[c] for c in active)
                full = [c for c in active if assigned[c] +
                        amount * tier_weight[c] / total > limit(c)]
                if not full:
                    for c in active:
                        assigned[c] += amount * tier_weight[c] / total
                    return 0
                for c in full:
                    amount -= limit(c) - assigned[c]
                    assigned[c] = limit(c)
                active = [c for c in active if c not in full]
            return amount

        replicas_by_tier = {}

        def place(tier, amount):
            replicas_by_tier[tier] = amount
            children = sorted(tier2children.get(tier, ()))
            if not children:
                return
            assigned = dict((c, 0.0) for c in children)
            leftover = fill(amount, children, assigned,
                            lambda c: min(max_replicas[c], tier_devs[c]))
            if leftover:
                fill(leftover, children, assigned, lambda c: tier_devs[c])
            for child in children:
                place(child, assigned[child])

        place((), float(self.builder.replicas))
        return replicas_by_tier

    def _build_targets(self, weighted):
        """
        Work out how many parts every weighted device should hold.

        The replica slots of the ring are handed down the tier tree in
        proportion to :meth:`_build_replicas_by_tier`. At each tier the
        floors of the children's quotas are handed out first and the
        remaining slots go to the largest fractional remainders, the child
        holding the lowest device id first on a tie.
        """
        builder = self.builder
        for dev in weighted:
            dev.setdefault('tiers', tiers_for_dev(dev))
        self.max_replicas = builder._build_max_replicas_by_tier()
        replicas_by_tier = self._build_replicas_by_tier(weighted)
        tier2children = build_tier_tree(weighted)
        lowest_id = {}
        for dev in weighted:
            for tier in ((),) + dev['tiers']:
                lowest_id[tier] = min(lowest_id.get(tier, dev['id']),
                                      dev['id'])
        targets = {}

        def apportion(tier, slots):
            children = tier2children.get(tier)
            if not children:
                targets[tier[-1]] = slots
                return
            share = replicas_by_tier[tier]
            quotas = dict(
                (child, slots * replicas_by_tier[child] / share
                 if share else 0.0) for child in children)
            floors = dict((child, int(math.floor(quota)))
                          for child, quota in quotas.items())
            leftover = slots - sum(floors.values())
            by_remainder = sorted(
                children, key=lambda c: (floors[c] - quotas[c], lowest_id[c]))
            for child in by_remainder[:leftover]:
                floors[child] += 1
            for child in children:
                apportion(child, floors[child])

        apportion((), sum(len(part2dev)
                          for part2dev in builder._replica2part2dev))

        overload = builder.overload
        self.targets = targets
        self.allowed = dict(
            (dev_id, max(target, int(math.floor(target * (1 + overload)))))
            for dev_id, target in targets.items())
        self.logger.debug("Targets per device: %r", targets)

    def _parts_wanted(self, dev):
        return self.targets.get(dev['id'], 0) - dev['parts']

    def _overweight_devs(self):
        return [dev for dev in self.builder._iter_devs()
                if dev['parts'] > self.allowed.get(dev['id'], 0)]

    def _gather_for_balance(self, to_assign):
        """
        Take one replica of each movable partition off its most overweight
        device, while that device still holds more than its allowance.
        """
        builder = self.builder
        gathered = 0
        for part in range(builder.parts):
            if not self._can_part_move(part):
                continue
            overweight = []
            for replica in builder._replicas_for_part(part):
                dev_id = builder._replica2part2dev[replica][part]
                if dev_id == NONE_DEV:
                    continue
                dev = builder.devs[dev_id]
                if dev['parts'] > self.allowed.get(dev_id, 0):
                    overweight.append((self._parts_wanted(dev), dev_id,
                                       replica))
            if not overweight:
                continue
            overweight.sort()
            self._unassign(part, overweight[0][2], to_assign)
            gathered += 1
        self.logger.debug("Gathered %d parts for balance", gathered)

    def _room_class(self, dev):
        parts = dev['parts']
        if parts < self.targets[dev['id']]:
            return 0
        if parts < self.allowed[dev['id']]:
            return 1
        return 2

    def _reassign_parts(self, to_assign, for_balance=False):
        """
        Place every gathered replica. The device chosen for a replica is the
        one that shares the fewest regions, then zones, then servers with
        the partition's other replicas; on a tie the device the replica came
        from is kept. After that a device still under its target beats one
        within its overload allowance, which beats one already full.
        Remaining ties go to the device wanting the most parts and then to
        the lowest device id.

        Replicas gathered for balance only go to a device with room that
        keeps the partition dispersed; failing that they are put back where
        they were, which does not count as a move.
        """
        builder = self.builder
        candidates = [d for d in builder._iter_devs() if d['weight'] > 0]
        for part in sorted(to_assign):
            for replica in to_assign[part]:
                original = self._original.get((part, replica))
                other_devs = builder._devs_for_part(part)
                holding = set(d['id'] for d in other_devs)
                replicas_at_tier = defaultdict(int)
                for dev in other_devs:
                    for tier in dev['tiers']:
                        replicas_at_tier[tier] += 1

                def sort_key(dev):
                    region, zone, server = dev['tiers'][:3]
                    return (replicas_at_tier[region],
                            replicas_at_tier[zone],
                            replicas_at_tier[server],
                            dev['id'] != original,
                            self._room_class(dev),
                            -self._parts_wanted(dev),
                            dev['id'])

                choices = [d for d in candidates if d['id'] not in holding]
                if for_balance:
                    choices = [
                        d for d in choices if self._room_class(d) < 2 and
                        all(replicas_at_tier[tier] < self.max_replicas[tier]
                            for tier in d['tiers'])]
                    if not choices:
                        self._assign(part, replica, builder.devs[original])
                        continue
                self._assign(part, replica, min(choices, key=sort_key))
