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
import logging

from datetime import timedelta
from errno import EEXIST
from operator import itemgetter
from os import mkdir
from os.path import basename, abspath, dirname, exists, join as pathjoin
import sys
from sys import argv as sys_argv, exit
from textwrap import wrap
from time import time
import traceback
import optparse

from ringkeeper.common import exceptions
from ringkeeper.common.ring import RingBuilder, RingData
from ringkeeper.common.ring.builder import MAX_BALANCE
from ringkeeper.common.ring.utils import validate_args, \
    build_dev_from_opts, parse_builder_ring_filename_args, \
    parse_search_value, parse_search_values_from_opts, \
    parse_change_values_from_opts, parse_add_value
from ringkeeper.common.utils import lock_parent_directory

MAJOR_VERSION = 1
MINOR_VERSION = 0
EXIT_SUCCESS = 0
EXIT_WARNING = 1
EXIT_ERROR = 2

#: commands that change the builder or ring files and so run under a lock
LOCKED_COMMANDS = ('create', 'add', 'set_weight', 'set_info', 'remove',
                   'rebalance', 'write_ring', 'set_overload', 'set_replicas',
                   'set_min_part_hours', 'pretend_min_part_hours_passed')

SELECT_OPTIONS_USAGE = """\
    --region <region> --zone <zone> --ip <ip or hostname> --port <port>
    --replication-ip <ip or hostname> --replication-port <port>
    --device <device name> --meta <meta> --weight <weight>"""

global argv, backup_dir, builder, builder_file, ring_file
argv = backup_dir = builder = builder_file = ring_file = None


def _bracket_ipv6(address):
    return '[%s]' % address if ':' in address else address


def format_device(dev):
    """
    One-line description of a device in the same syntax ``add`` accepts,
    e.g. ``d0r1z2-10.0.0.1:6200R10.0.0.1:6200/sdb1_"meta"``.
    """
    shown = dict(dev, ip=_bracket_ipv6(dev['ip']),
                 replication_ip=_bracket_ipv6(dev['replication_ip']))
    return ('d%(id)sr%(region)sz%(zone)s-%(ip)s:%(port)sR'
            '%(replication_ip)s:%(replication_port)s/%(device)s_'
            '"%(meta)s"' % shown)


def _usage(command):
    return getattr(Commands, command).__doc__.strip()


def _exit_with_usage(command, search_help=False):
    print(_usage(command))
    if search_help:
        print()
        print(parse_search_value.__doc__.strip())
    exit(EXIT_ERROR)


def _builder_unchanged(err):
    print(err)
    print('The on-disk ring builder is unchanged.')
    exit(EXIT_ERROR)


def _find_parts(devs):
    """
    Count, for every partition, how many of its replicas sit on ``devs``.

    :returns: list of (partition, count), most replicas first, or None when
              there is nothing to look for
    """
    dev_ids = set(d['id'] for d in devs)
    if not dev_ids or not builder._replica2part2dev:
        return None

    matches = []
    for partition in range(builder.parts):
        found = len([dev for dev in builder.get_part_devices(partition)
                     if dev['id'] in dev_ids])
        if found:
            matches.append((partition, found))
    return sorted(matches, key=itemgetter(1), reverse=True)


def _select_devs(argvish, command):
    """
    Find the devices chosen either by positional search values or by the
    device options. Mixing the two prints the command's usage.

    :returns: (list of device dicts, options)
    """
    used_options, opts, args = validate_args(argvish)
    if args and used_options:
        _exit_with_usage(command)
    try:
        if not args:
            return builder.search_devs(
                parse_search_values_from_opts(opts)), opts
        devs = []
        for arg in args:
            for dev in builder.search_devs(parse_search_value(arg)):
                if dev not in devs:
                    devs.append(dev)
        return devs, opts
    except ValueError as e:
        print(e)
        exit(EXIT_ERROR)


def _parse_add_values(argvish):
    """
    The devices an ``add`` command asks for, as keyword dicts for
    :meth:`RingBuilder.add_dev`. Exits with the usage on malformed input.
    """
    used_options, opts, args = validate_args(argvish)
    if not args:
        return [build_dev_from_opts(opts)]
    if used_options or len(args) % 2:
        _exit_with_usage('add')

    devs = []
    for devstr, weightstr in zip(args[::2], args[1::2]):
        dev = parse_add_value(devstr)
        if dev['region'] is None:
            print('WARNING: No region specified for %s. '
                  'Defaulting to region 0.' % devstr)
            dev['region'] = 0
        try:
            dev['weight'] = float(weightstr)
        except ValueError:
            raise ValueError('Invalid weight value: %s' % weightstr)
        devs.append(dev)
    return devs


def check_devs(devs, input_question, opts, abort_msg):
    """
    Show the selected devices and ask before changing them, unless --yes
    was given. Exits when nothing matched or the answer is not 'y'.
    """
    if not devs:
        print('Search value matched 0 devices.\n'
              'The on-disk ring builder is unchanged.')
        exit(EXIT_ERROR)

    print('Search matched the following devices:')
    for dev in devs:
        print('    %s' % format_device(dev))
    if opts.yes:
        return
    try:
        answer = input(input_question)
    except (EOFError, KeyboardInterrupt):
        answer = ''
    if answer.lower() != 'y':
        print(abort_msg)
        exit(EXIT_ERROR)


def _device_row(dev, balance, flags):
    return (dev['id'], dev['region'], dev['zone'], _bracket_ipv6(dev['ip']),
            dev['port'], _bracket_ipv6(dev['replication_ip']),
            dev['replication_port'], dev['device'], dev['weight'],
            dev['parts'], balance, flags, dev['meta'])


def _device_table(rows):
    """
    Lay out rows from :func:`_device_row` under a ``Devices:`` header. The
    address, port and weight columns widen to fit their longest value.
    """
    def width(minimum, column, fmt='%s'):
        return max([minimum] + [len(fmt % row[column]) for row in rows])

    ip_w, port_w = width(10, 3), width(4, 4)
    rep_ip_w, rep_port_w = width(14, 5), width(4, 6)
    weight_w = width(6, 8, '%.02f')
    header = 'Devices:%5s %6s %4s %*s:%-*s %*s:%-*s %5s %*s %10s %7s %5s %s'
    lines = [header % (
        'id', 'region', 'zone', ip_w, 'ip address', port_w, 'port',
        rep_ip_w, 'replication ip', rep_port_w, 'port', 'name',
        weight_w, 'weight', 'partitions', 'balance', 'flags', 'meta')]
    for (dev_id, region, zone, ip, port, rep_ip, rep_port, name, weight,
         parts, balance, flags, meta) in rows:
        lines.append(
            '%13d %6d %4d %*s:%-*d %*s:%-*d %5s %*.02f %10s %7.02f %5s %s' % (
                dev_id, region, zone, ip_w, ip, port_w, port,
                rep_ip_w, rep_ip, rep_port_w, rep_port, name,
                weight_w, weight, parts, balance, flags, meta))
    return lines


def _balance_of(dev, weighted_parts):
    if not dev['weight']:
        return MAX_BALANCE if dev['parts'] else 0
    return 100.0 * dev['parts'] / (dev['weight'] * weighted_parts) - 100.0


def _weight_of_one_part():
    try:
        return builder.weight_of_one_part()
    except exceptions.EmptyRingError:
        return 0


def _backup_name(path, ts=None):
    if ts is None:
        ts = time()
    return pathjoin(backup_dir, '%d.' % ts + basename(path))


def _ring_file_status():
    if not exists(ring_file):
        return ('Ring file %s not found, probably it hasn\'t been written '
                'yet' % ring_file)
    try:
        on_disk = RingData.load(ring_file).to_dict()
    except Exception as exc:
        return 'Ring file %s is invalid: %r' % (ring_file, exc)
    if builder.get_ring().to_dict() == on_disk:
        return 'Ring file %s is up-to-date' % ring_file
    return 'Ring file %s is obsolete' % ring_file


def _print_validation_error(err):
    print('-' * 79)
    print("An error has occurred during ring validation. Common\n"
          "causes of failure are rings that are empty or do not\n"
          "have enough devices to accommodate the replica count.\n"
          "Original exception message:\n %s" % (err,))
    print('-' * 79)


def _worth_saving(force, devs_changed, before, after):
    """
    A rebalance is written out when forced, when devices changed, or when
    balance or dispersion moved by at least one percentage point.
    ``before`` and ``after`` are (balance, dispersion); balance is None
    when it could not be computed before.
    """
    if force or devs_changed:
        return True
    (old_balance, old_dispersion), (balance, dispersion) = before, after
    return (old_balance is None or abs(old_balance - balance) >= 1 or
            abs(old_dispersion - dispersion) >= 1)


def _rebalance_note(balance, dispersion):
    """The warning to print after a rebalance, or None."""
    if dispersion > 0:
        return ('NOTE: Dispersion of %.06f indicates some parts are not\n'
                '      optimally dispersed.\n\n'
                '      You may want to adjust some device weights or\n'
                '      add devices in other zones.' % dispersion)
    if balance > 5 and balance / 100.0 > builder.overload:
        return ('NOTE: Balance of %.02f indicates you should push this ring,'
                '\n      wait at least %d hours, and rebalance/repush.' %
                (balance, builder.min_part_hours))
    return None


class Commands(object):
    @staticmethod
    def unknown():
        print('Unknown command: %s' % argv[2])
        exit(EXIT_ERROR)

    @staticmethod
    def create():
        """
ringkeeper-ring-builder <builder_file> create <part_power> <replicas>
                                              <min_part_hours>
    Creates <builder_file> for a ring of 2^<part_power> partitions, each
    stored <replicas> times (fractions allowed). A partition that moved
    may not move again for <min_part_hours> hours.
        """
        if len(argv) < 6:
            _exit_with_usage('create')
        try:
            new_builder = RingBuilder.create(
                builder_file, int(argv[3]), float(argv[4]), int(argv[5]))
        except (ValueError, exceptions.RingBuilderError) as e:
            print(e)
            exit(EXIT_ERROR)
        new_builder.save(_backup_name(builder_file))
        exit(EXIT_SUCCESS)

    @staticmethod
    def default():
        """
ringkeeper-ring-builder <builder_file>
    Summarizes the ring (partitions, replicas, balance, dispersion, cool
    down and overload), says whether the ring file matches the builder,
    and lists every device. Devices waiting to be removed on the next
    rebalance are flagged DEL.
        """
        devs = list(builder._iter_devs())
        print('%s, build version %d' % (builder_file, builder.version))
        empty_error = None
        try:
            balance = builder.get_balance()
        except exceptions.EmptyRingError as e:
            empty_error = str(e)
            balance = 0
        except ValueError:
            # no weighted device to measure against
            balance = 0
        print('%d partitions, %.6f replicas, %d regions, %d zones, '
              '%d devices, %.02f balance, %.02f dispersion' % (
                  builder.parts, builder.replicas,
                  len(set(d['region'] for d in devs)),
                  len(set((d['region'], d['zone']) for d in devs)),
                  len(devs), balance, builder.get_dispersion()))
        print('The minimum number of hours before a partition can be '
              'reassigned is %s (%s remaining)' % (
                  builder.min_part_hours,
                  timedelta(seconds=builder.min_part_seconds_left)))
        print('The overload factor is %0.2f%% (%.6f)' % (
            builder.overload * 100, builder.overload))
        print(_ring_file_status())

        weighted_parts = 0 if empty_error else _weight_of_one_part()
        removing = set(d['id'] for d in builder._remove_devs)
        rows = [_device_row(
                    dev,
                    _balance_of(dev, weighted_parts) if weighted_parts else 0,
                    'DEL' if dev['id'] in removing else '')
                for dev in sorted(devs, key=itemgetter(
                    'region', 'zone', 'ip', 'device'))]
        for line in _device_table(rows):
            print(line)
        if empty_error:
            print(empty_error)
        exit(EXIT_SUCCESS)

    @staticmethod
    def info():
        """
ringkeeper-ring-builder <builder_file> info
    Another name for running without a command.
        """
        Commands.default()

    @staticmethod
    def load():
        """
ringkeeper-ring-builder <builder_file> load
    Prints the builder settings and devices as JSON, without the partition
    assignment.
        """
        state = builder.to_dict()
        for key in ('_replica2part2dev', '_last_part_moves'):
            del state[key]
        state['devs'] = [
            dict((k, v) for k, v in dev.items() if k != 'tiers')
            if dev else None for dev in builder.devs]
        state['_remove_devs'] = [dev['id'] for dev in builder._remove_devs]
        state['rebalanced'] = builder.ever_rebalanced
        print(json.dumps(state, sort_keys=True, indent=2))
        exit(EXIT_SUCCESS)

    @staticmethod
    def search():
        """
ringkeeper-ring-builder <builder_file> search <search-value>

or

ringkeeper-ring-builder <builder_file> search
%s

    Lists the devices matching every given filter. With no filter at all
    every device matches.
        """
        devs, _opts = _select_devs(argv[3:], 'search')
        if not devs:
            print('No matching devices found')
            exit(EXIT_ERROR)
        print('Devices:    id  region  zone      ip address  port  '
              'replication ip  replication port      name weight partitions '
              'balance meta')
        weighted_parts = _weight_of_one_part()
        for dev in devs:
            balance = _balance_of(dev, weighted_parts) \
                if weighted_parts else 0
            print('         %5d %7d %5d %15s %5d %15s %17d %9s %6.02f %10s '
                  '%7.02f %s' %
                  (dev['id'], dev['region'], dev['zone'], dev['ip'],
                   dev['port'], dev['replication_ip'], dev['replication_port'],
                   dev['device'], dev['weight'], dev['parts'], balance,
                   dev['meta']))
        exit(EXIT_SUCCESS)

    @staticmethod
    def list_parts():
        """
ringkeeper-ring-builder <builder_file> list_parts <search-value>
    [<search-value>] ...

or

ringkeeper-ring-builder <builder_file> list_parts
%s

    Prints each partition with a replica on any matching device, next to
    how many of its replicas those devices hold, most first. Handy for
    finding what a failed server held.
        """
        if len(argv) < 4:
            _exit_with_usage('list_parts', search_help=True)
        if not builder._replica2part2dev:
            print('Specified builder file \"%s\" is not rebalanced yet. '
                  'Please rebalance first.' % builder_file)
            exit(EXIT_ERROR)

        devs, _opts = _select_devs(argv[3:], 'list_parts')
        matches = _find_parts(devs)
        if not matches:
            print('No matching devices found')
            exit(EXIT_ERROR)
        print('Partition   Matches')
        for partition, count in matches:
            print('%9d   %7d' % (partition, count))
        exit(EXIT_SUCCESS)

    @staticmethod
    def add():
        """
ringkeeper-ring-builder <builder_file> add
    [r<region>]z<zone>-<ip>:<port>[R<r_ip>:<r_port>]/<device_name>_<meta>
     <weight> [<device> <weight>] ...

or

ringkeeper-ring-builder <builder_file> add
    --region <region> --zone <zone> --ip <ip or hostname> --port <port>
    [--replication-ip <ip or hostname>] [--replication-port <port>]
    --device <device_name> --weight <weight>
    [--meta <meta>] [--id <id>]

    Adds devices. They get partitions on the next rebalance, so several
    changes can go out together.
        """
        if len(argv) < 5:
            _exit_with_usage('add')
        try:
            for new_dev in _parse_add_values(argv[3:]):
                dev_id = builder.add_dev(**new_dev)
                print('Device %s with %s weight got id %s' %
                      (format_device(builder.devs[dev_id]),
                       new_dev['weight'], dev_id))
        except (ValueError, exceptions.RingBuilderError) as err:
            _builder_unchanged(err)
        builder.save(builder_file)
        exit(EXIT_SUCCESS)

    @staticmethod
    def set_weight():
        """
ringkeeper-ring-builder <builder_file> set_weight <search-value> <new_weight>
    [--yes]

or

ringkeeper-ring-builder <builder_file> set_weight
%s
    <new_weight> [--yes]

    Gives the matching devices a new weight, asking first unless --yes.
    Partitions follow on the next rebalance. The last positional argument
    is always the new weight, so --weight can still filter on the old one.
        """
        if len(argv) < 5:
            _exit_with_usage('set_weight', search_help=True)
        _used_options, _opts, args = validate_args(argv[3:])
        if not args:
            _exit_with_usage('set_weight')
        try:
            new_weight = float(args[-1])
        except ValueError:
            print('Invalid weight value: %s' % args[-1])
            exit(EXIT_ERROR)
        # drop the last occurrence of the weight, the rest selects devices
        search_argv = list(argv[3:])
        del search_argv[len(search_argv) - 1 -
                        search_argv[::-1].index(args[-1])]
        devs, opts = _select_devs(search_argv, 'set_weight')

        check_devs(devs,
                   'Are you sure you want to update the weight to %.2f for '
                   'these %d devices? (y/N) ' % (new_weight, len(devs)),
                   opts, 'Aborting device modifications')
        try:
            builder.set_weight([dev['id'] for dev in devs], new_weight)
        except (ValueError, exceptions.RingBuilderError) as err:
            _builder_unchanged(err)
        for dev in devs:
            print('%s weight set to %s' % (format_device(dev),
                                           dev['weight']))
        builder.save(builder_file)
        exit(EXIT_SUCCESS)

    @staticmethod
    def set_info():
        """
ringkeeper-ring-builder <builder_file> set_info
    <search-value> [<search-value>] ... <changes> [--yes]

or

ringkeeper-ring-builder <builder_file> set_info
%s
    <changes> [--yes]

    Where <changes> is any of
    --change-ip <ip or hostname> --change-port <port>
    --change-replication-ip <ip or hostname> --change-replication-port <port>
    --change-device <device_name> --change-meta <meta>

    Rewrites the address, name or meta of the matching devices, asking
    first unless --yes. Placement does not depend on these, so a
    'write_ring' is enough to publish them.
        """
        if len(argv) < 5:
            _exit_with_usage('set_info', search_help=True)
        devs, opts = _select_devs(argv[3:], 'set_info')
        try:
            changes = parse_change_values_from_opts(opts)
        except ValueError as err:
            print(err)
            exit(EXIT_ERROR)
        if not changes:
            print('No --change-* option given; nothing to update.')
            exit(EXIT_ERROR)

        check_devs(devs,
                   'Are you sure you want to update the info for these %d '
                   'devices? (y/N) ' % len(devs),
                   opts, 'Aborting device modifications')
        try:
            builder.set_info([dev['id'] for dev in devs], changes)
        except (ValueError, exceptions.RingBuilderError) as err:
            _builder_unchanged(err)
        for dev in devs:
            print('Device %s updated' % format_device(dev))
        builder.save(builder_file)
        exit(EXIT_SUCCESS)

    @staticmethod
    def remove():
        """
ringkeeper-ring-builder <builder_file> remove <search-value> [search-value ...]
    [--yes]

or

ringkeeper-ring-builder <builder_file> remove
%s
    [--yes]

    Marks the matching devices for removal, asking first unless --yes.
    The next rebalance moves their partitions away and frees their ids.
    To retire a healthy device, set its weight to 0 and let it drain
    before removing it.
        """
        if len(argv) < 4:
            _exit_with_usage('remove', search_help=True)
        devs, opts = _select_devs(argv[3:], 'remove')
        check_devs(devs,
                   'Are you sure you want to remove these %s devices? '
                   '(y/N) ' % len(devs),
                   opts, 'Aborting device removals')
        try:
            builder.remove_devs([dev['id'] for dev in devs])
        except (ValueError, exceptions.RingBuilderError) as err:
            _builder_unchanged(err)
        for dev in devs:
            print('%s marked for removal and will '
                  'be removed next rebalance.' % format_device(dev))
        builder.save(builder_file)
        exit(EXIT_SUCCESS)

    @staticmethod
    def rebalance():
        """
ringkeeper-ring-builder <builder_file> rebalance [--force] [--debug]
    Moves partitions that are free to move towards their weighted and
    dispersed placement, then writes the ring file. Unless --force, a
    rebalance that changed nothing worth a new ring is not saved.
        """
        parser = optparse.OptionParser(_usage('rebalance'))
        parser.add_option('-f', '--force', action='store_true',
                          help='save the result even if it barely changed')
        parser.add_option('-d', '--debug', action='store_true',
                          help='log rebalance decisions')
        options, _args = parser.parse_args(argv)

        if options.debug:
            logger = logging.getLogger("ringkeeper.ring.builder")
            logger.setLevel(logging.DEBUG)
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(
                logging.Formatter("%(levelname)s: %(message)s"))
            logger.addHandler(handler)

        devs_changed = builder.devs_changed
        min_part_seconds_left = builder.min_part_seconds_left
        try:
            try:
                last_balance = builder.get_balance()
            except (exceptions.EmptyRingError, ValueError):
                last_balance = None
            last_dispersion = builder.get_dispersion()
            if options.debug:
                with builder.debug():
                    parts, balance, removed_devs = builder.rebalance()
            else:
                parts, balance, removed_devs = builder.rebalance()
            dispersion = builder.get_dispersion()
        except exceptions.RingBuilderError as e:
            _print_validation_error(e)
            exit(EXIT_ERROR)

        if not (parts or options.force or removed_devs):
            print('No partitions could be reassigned.')
            if min_part_seconds_left > 0:
                print('The time between rebalances must be at least '
                      'min_part_hours: %s hours (%s remaining)' % (
                          builder.min_part_hours,
                          timedelta(seconds=builder.min_part_seconds_left)))
            else:
                print('There is no need to do so at this time')
            exit(EXIT_WARNING)
        if not _worth_saving(options.force, devs_changed,
                             (last_balance, last_dispersion),
                             (balance, dispersion)):
            print('Cowardly refusing to save rebalance as it did not change '
                  'at least 1%.')
            exit(EXIT_WARNING)
        try:
            builder.validate()
        except exceptions.RingValidationError as e:
            _print_validation_error(e)
            exit(EXIT_ERROR)

        print('Reassigned %d (%.02f%%) partitions. '
              'Balance is now %.02f.  '
              'Dispersion is now %.02f' % (
                  parts, 100.0 * parts / builder.parts,
                  balance, dispersion))
        status = EXIT_SUCCESS
        note = _rebalance_note(balance, dispersion)
        if note:
            print('-' * 79)
            print(note)
            print('-' * 79)
            status = EXIT_WARNING

        ts = time()
        builder.get_ring().save(_backup_name(ring_file, ts))
        builder.save(_backup_name(builder_file, ts))
        builder.get_ring().save(ring_file)
        builder.save(builder_file)
        exit(status)

    @staticmethod
    def validate():
        """
ringkeeper-ring-builder <builder_file> validate
    Checks the partition assignment for inconsistencies.
        """
        try:
            builder.validate()
        except exceptions.RingValidationError as e:
            print(e)
            exit(EXIT_ERROR)
        exit(EXIT_SUCCESS)

    @staticmethod
    def write_ring():
        """
ringkeeper-ring-builder <builder_file> write_ring
    Writes the ring file from the current assignment. Rebalance already
    does this; use it to publish 'set_info' changes without moving any
    partition.
        """
        if not builder.devs:
            print('Unable to write empty ring.')
            exit(EXIT_ERROR)
        try:
            builder.write_ring(_backup_name(ring_file))
            builder.write_ring(ring_file)
        except exceptions.RingValidationError as e:
            print(e)
            print('Did you forget to run "rebalance"?')
            exit(EXIT_ERROR)
        exit(EXIT_SUCCESS)

    @staticmethod
    def pretend_min_part_hours_passed():
        """
ringkeeper-ring-builder <builder_file> pretend_min_part_hours_passed
    Forgets when partitions last moved, so the next rebalance may move any
    of them. Publishing such a ring before replication has caught up can
    leave data unreachable for a while.
        """
        builder.pretend_min_part_hours_passed()
        builder.save(builder_file)
        exit(EXIT_SUCCESS)

    @staticmethod
    def set_min_part_hours():
        """
ringkeeper-ring-builder <builder_file> set_min_part_hours <hours>
    Sets how long a moved partition stays put. Use at least the time a
    full replication pass takes.
        """
        if len(argv) < 4:
            _exit_with_usage('set_min_part_hours')
        try:
            builder.change_min_part_hours(int(argv[3]))
        except ValueError as e:
            print(e)
            exit(EXIT_ERROR)
        print('The minimum number of hours before a partition can be '
              'reassigned is now set to %s' % argv[3])
        builder.save(builder_file)
        exit(EXIT_SUCCESS)

    @staticmethod
    def set_replicas():
        """
ringkeeper-ring-builder <builder_file> set_replicas <replicas>
    Sets the replica count. A fractional count such as 2.5 gives half the
    partitions 3 replicas and the other half 2. Takes effect on the next
    rebalance.
        """
        if len(argv) < 4:
            _exit_with_usage('set_replicas')
        try:
            new_replicas = float(argv[3])
        except ValueError:
            print(_usage('set_replicas'))
            print("\"%s\" is not a valid number." % argv[3])
            exit(EXIT_ERROR)
        try:
            builder.set_replicas(new_replicas)
        except ValueError as e:
            print(e)
            exit(EXIT_ERROR)
        print('The replica count is now %.6f.' % builder.replicas)
        print('The change will take effect after the next rebalance.')
        builder.save(builder_file)
        exit(EXIT_SUCCESS)

    @staticmethod
    def set_overload():
        """
ringkeeper-ring-builder <builder_file> set_overload <overload>[%]
    Sets how far beyond its weighted share a device may be filled to keep
    replicas dispersed, as a fraction (0.1) or a percentage (10%). Takes
    effect on the next rebalance.
        """
        if len(argv) < 4:
            _exit_with_usage('set_overload')
        value = argv[3]
        percent = value.endswith('%')
        value = value.rstrip('%')
        try:
            new_overload = float(value)
        except ValueError:
            print(_usage('set_overload'))
            print("%r is not a valid number." % value)
            exit(EXIT_ERROR)
        if percent:
            new_overload *= 0.01
        try:
            builder.set_overload(new_overload)
        except ValueError as e:
            print(e)
            exit(EXIT_ERROR)
        status = EXIT_SUCCESS
        if new_overload > 1 and not percent:
            print('!?! Warning overload is greater than 100% !?!')
            status = EXIT_WARNING
        print('The overload factor is now %0.2f%% (%.6f)' % (
            builder.overload * 100, builder.overload))
        print('The change will take effect after the next rebalance.')
        builder.save(builder_file)
        exit(status)


for _command in ('search', 'list_parts', 'set_weight', 'set_info', 'remove'):
    getattr(Commands, _command).__doc__ = \
        getattr(Commands, _command).__doc__ % SELECT_OPTIONS_USAGE


def _print_help():
    print("ringkeeper-ring-builder %d.%d\n" % (MAJOR_VERSION, MINOR_VERSION))
    print(_usage('default'))
    print()
    cmds = sorted(c for c in dir(Commands)
                  if not c.startswith('_') and c != 'default' and
                  getattr(Commands, c).__doc__)
    for cmd in cmds:
        print(_usage(cmd))
        print()
    print(parse_search_value.__doc__.strip())
    print()
    for line in wrap(' '.join(cmds), 79, initial_indent='Quick list: ',
                     subsequent_indent='            '):
        print(line)
    print('Exit codes: 0 = operation successful\n'
          '            1 = operation completed with warnings\n'
          '            2 = error')


def main(arguments=None):
    global argv, backup_dir, builder, builder_file, ring_file
    argv = sys_argv if arguments is None else arguments

    if len(argv) < 2:
        _print_help()
        exit(EXIT_SUCCESS)

    builder_file, ring_file = parse_builder_ring_filename_args(argv)
    if builder_file != argv[1]:
        print('Note: using %s instead of %s as builder file' % (
              builder_file, argv[1]))

    command = argv[2] if len(argv) > 2 else 'default'
    try:
        builder = RingBuilder.load(builder_file)
    except exceptions.UnPicklingError as e:
        print(e)
        exit(EXIT_ERROR)
    except (exceptions.FileNotFoundError, exceptions.PermissionError) as e:
        if command != 'create':
            print(e)
            exit(EXIT_ERROR)
    except Exception as e:
        print('Problem occurred while reading builder file: %s. %s' %
              (builder_file, e))
        exit(EXIT_ERROR)

    backup_dir = pathjoin(dirname(builder_file), 'backups')
    try:
        mkdir(backup_dir)
    except OSError as err:
        if err.errno != EEXIST:
            raise

    run = getattr(Commands, command, Commands.unknown)
    if command not in LOCKED_COMMANDS:
        run()
        return
    try:
        with lock_parent_directory(abspath(builder_file), 15):
            run()
    except exceptions.LockTimeout:
        print("Ring/builder dir currently locked.")
        exit(EXIT_ERROR)


def error_handling_main():
    # Warnings exit 1 and errors exit 2, so an uncaught exception has to
    # exit 2 as well rather than Python's usual 1. Only the console entry
    # point installs the hook; main() leaves sys.excepthook alone.
    def exit_with_status_two(tp, val, tb):
        traceback.print_exception(tp, val, tb)
        exit(EXIT_ERROR)

    sys.excepthook = exit_with_status_two
    main()


if __name__ == '__main__':
    error_handling_main()
