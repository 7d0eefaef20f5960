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
from collections import defaultdict
import optparse
import re

from ringkeeper.common.utils import expand_ipv6, is_valid_hostname, \
    is_valid_ipv4, is_valid_ipv6

# r<region>z<zone>-<ip>:<port>[R<replication ip>:<replication port>]
#   /<device>[_<meta>]
ADD_VALUE_RE = re.compile(
    r'^(?:r(?P<region>\d+))?z(?P<zone>\d+)-'
    r'(?P<ip>[\d.]+|\[[0-9a-fA-F:.]+\]):(?P<port>\d+)'
    r'(?:R(?P<replication_ip>[\d.]+|\[[0-9a-fA-F:.]+\]):'
    r'(?P<replication_port>\d+))?'
    r'/(?P<device>[^_]+)(?:_(?P<meta>.+))?$')

# device dict keys that the search options can filter on
SEARCH_KEYS = ('id', 'region', 'zone', 'ip', 'port', 'replication_ip',
               'replication_port', 'device', 'weight', 'meta')
# device dict keys that set_info style changes may rewrite
CHANGE_KEYS = ('ip', 'port', 'replication_ip', 'replication_port',
               'device', 'meta')
ADDRESS_KEYS = ('ip', 'replication_ip')


def tiers_for_dev(dev):
    """
    The failure domains a device lives in, from widest to narrowest:
    region, zone, server (ip) and finally the device itself.
    """
    region, zone, ip = dev['region'], dev['zone'], dev['ip']
    return ((region,),
            (region, zone),
            (region, zone, ip),
            (region, zone, ip, dev['id']))


def build_tier_tree(devices):
    """
    Map every tier to the set of tiers directly below it.

    Regions hang off a synthetic root ``()`` so there is a single tree
    even with several regions::

        {
          (): {(1,), (2,)},
          (1,): {(1, 1)},
          (1, 1): {(1, 1, '10.0.0.1')},
          (1, 1, '10.0.0.1'): {(1, 1, '10.0.0.1', 0),
                               (1, 1, '10.0.0.1', 1)},
          ...
        }

    :param devices: device dicts
    :returns: defaultdict(set) of tier -> child tiers
    """
    children = defaultdict(set)
    for dev in devices:
        for tier in tiers_for_dev(dev):
            children[tier[:-1]].add(tier)
    return children


def validate_and_normalize_ip(ip):
    """
    Lower-case an IPv4 or IPv6 literal, expanding IPv6 fully.

    :raises ValueError: for anything that is not an ip address
    """
    normalized = ip.lower()
    if is_valid_ipv4(normalized):
        return normalized
    if is_valid_ipv6(normalized):
        return expand_ipv6(normalized)
    raise ValueError('Invalid ip %s' % ip)


def validate_and_normalize_address(address):
    """
    Like :func:`validate_and_normalize_ip` but hostnames are accepted too
    (lower-cased). A bracketed value such as ``[::1]`` must be an ip.

    :raises ValueError: for anything that is neither an ip nor a hostname
    """
    if address.startswith('[') and address.endswith(']'):
        return validate_and_normalize_ip(address[1:-1])
    try:
        return validate_and_normalize_ip(address)
    except ValueError:
        pass
    if is_valid_hostname(address.lower()):
        return address.lower()
    raise ValueError('Invalid address %s' % address)


def validate_device_name(device_name):
    """A device name is non-empty and has no surrounding spaces."""
    return bool(device_name) and device_name == device_name.strip(' ')


def validate_port(port):
    """
    Return port as an int if it is a valid tcp port, else raise ValueError.
    """
    try:
        port = int(port)
    except (TypeError, ValueError):
        raise ValueError('Invalid port %r' % (port,))
    if not 0 <= port <= 65535:
        raise ValueError('Invalid port %r' % (port,))
    return port


def parse_search_value(search_value):
    """The <search-value> can be of the form::

        d<device_id>r<region>z<zone>-<ip>:<port>R<r_ip>:<r_port>/
         <device_name>_<meta>

    Where <r_ip> and <r_port> are replication ip and port.

    Any part is optional, but you must include at least one part.

    Examples::

        d74              Matches the device id 74
        r4               Matches devices in region 4
        z1               Matches devices in zone 1
        z1-1.2.3.4       Matches devices in zone 1 with the ip 1.2.3.4
        1.2.3.4          Matches devices in any zone with the ip 1.2.3.4
        z1:5678          Matches devices in zone 1 using port 5678
        :5678            Matches devices that use port 5678
        R5.6.7.8         Matches devices that use replication ip 5.6.7.8
        R:5678           Matches devices that use replication port 5678
        /sdb1            Matches devices with the device name sdb1
        _shiny           Matches devices with shiny in the meta data
        [::1]            Matches devices in any zone with the ip ::1

    All items require their single character prefix except the ip, in which
    case the - is optional unless the device id or zone is also included.
    """
    orig_search_value = search_value
    match = {}

    def take_digits(value):
        i = 1
        while i < len(value) and value[i].isdigit():
            i += 1
        if i == 1:
            raise ValueError('Invalid <search-value>: %s' %
                             repr(orig_search_value))
        return int(value[1:i]), value[i:]

    def take_ip(value):
        if value and value[0].isdigit():
            i = 1
            while i < len(value) and value[i] in '0123456789.':
                i += 1
            return validate_and_normalize_ip(value[:i]), value[i:]
        if value.startswith('['):
            i = value.find(']')
            if i == -1:
                raise ValueError('Invalid <search-value>: %s' %
                                 repr(orig_search_value))
            return validate_and_normalize_ip(value[1:i]), value[i + 1:]
        return None, value

    for prefix, key in (('d', 'id'), ('r', 'region'), ('z', 'zone')):
        if search_value.startswith(prefix):
            match[key], search_value = take_digits(search_value)
    if search_value.startswith('-'):
        search_value = search_value[1:]
    ip, search_value = take_ip(search_value)
    if ip is not None:
        match['ip'] = ip
    if search_value.startswith(':'):
        match['port'], search_value = take_digits(search_value)
    # replication parameters
    if search_value.startswith('R'):
        replication_ip, search_value = take_ip(search_value[1:])
        if replication_ip is not None:
            match['replication_ip'] = replication_ip
        if search_value.startswith(':'):
            match['replication_port'], search_value = \
                take_digits(search_value)
    if search_value.startswith('/'):
        i = 1
        while i < len(search_value) and search_value[i] != '_':
            i += 1
        match['device'] = search_value[1:i]
        search_value = search_value[i:]
    if search_value.startswith('_'):
        match['meta'] = search_value[1:]
        search_value = ''
    if search_value or not match:
        raise ValueError('Invalid <search-value>: %s' %
                         repr(orig_search_value))
    return match


def _opts_to_dict(opts, keys, opt_prefix=''):
    values = {}
    for key in keys:
        value = getattr(opts, opt_prefix + key, None)
        if value is None or value == '':
            continue
        if key in ADDRESS_KEYS:
            value = validate_and_normalize_address(value)
        values[key] = value
    return values


def parse_search_values_from_opts(opts):
    """
    Pull the device filters (``--id``, ``--zone``, ``--ip`` ...) out of
    parsed options. Unset options are left out; addresses are normalized.

    :returns: dict suitable for :meth:`RingBuilder.search_devs`
    """
    return _opts_to_dict(opts, SEARCH_KEYS)


def parse_change_values_from_opts(opts):
    """
    Pull the ``--change-*`` options out of parsed options, keyed by the
    device attribute they change.

    :returns: dict suitable for :meth:`RingBuilder.set_dev_info`
    """
    return _opts_to_dict(opts, CHANGE_KEYS, opt_prefix='change_')


def parse_add_value(add_value):
    """
    Convert an add value, like 'r1z2-10.1.2.3:7878/sdf', to a dictionary.

    If the string does not start with 'r<N>', then the value of 'region' in
    the returned dictionary will be None. Callers should check for this and
    set a reasonable default.

    Similarly, 'replication_ip' and 'replication_port' will be None if not
    specified.

    :returns: dictionary with keys 'region', 'zone', 'ip', 'port', 'device',
        'replication_ip', 'replication_port', 'meta'
    :raises ValueError: if add_value is malformed
    """
    match = ADD_VALUE_RE.match(add_value)
    if not match:
        raise ValueError('Invalid add value: %s' % add_value)
    parsed = match.groupdict()

    region = parsed['region']
    if region is not None:
        region = int(region)
    ip = validate_and_normalize_ip(parsed['ip'].lstrip('[').rstrip(']'))
    port = validate_port(parsed['port'])
    replication_ip = replication_port = None
    if parsed['replication_ip'] is not None:
        replication_ip = validate_and_normalize_ip(
            parsed['replication_ip'].lstrip('[').rstrip(']'))
        replication_port = validate_port(parsed['replication_port'])
    if not validate_device_name(parsed['device']):
        raise ValueError('Invalid device name')

    return {'region': region, 'zone': int(parsed['zone']), 'ip': ip,
            'port': port, 'device': parsed['device'],
            'replication_ip': replication_ip,
            'replication_port': replication_port,
            'meta': parsed['meta'] or ''}


# (short flag, attribute, type, help) for every device option; each one
# also has a --change-<attribute> twin (upper-case short flag) except
# id, region, zone and weight which cannot be changed in place.
DEVICE_OPTIONS = (
    ('u', 'id', 'int', 'device id'),
    ('r', 'region', 'int', 'region number'),
    ('z', 'zone', 'int', 'zone number'),
    ('i', 'ip', 'string', 'ip address or hostname'),
    ('p', 'port', 'int', 'port number'),
    ('j', 'replication_ip', 'string', 'replication ip address'),
    ('q', 'replication_port', 'int', 'replication port number'),
    ('d', 'device', 'string', 'device name, e.g. sdb1'),
    ('w', 'weight', 'float', 'device weight'),
    ('m', 'meta', 'string', 'free form device notes'),
)


def parse_args(argvish):
    """
    Parse the device options shared by the search, add and set_info
    style commands.

    :returns: (options, positional args)
    """
    parser = optparse.OptionParser()
    for short, attr, kind, text in DEVICE_OPTIONS:
        long_opt = '--' + attr.replace('_', '-')
        default = '' if attr == 'meta' else None
        parser.add_option('-' + short, long_opt, type=kind, dest=attr,
                          default=default, help=text)
        if attr in CHANGE_KEYS:
            parser.add_option('-' + short.upper(), '--change-' + long_opt[2:],
                              type=kind, dest='change_' + attr,
                              default=default, help='new ' + text)
    parser.add_option('-y', '--yes', default=False, action="store_true",
                      help="Assume a yes response to all questions")
    parser.add_option('--debug', default=False, action="store_true",
                      help="Log rebalance decisions to stderr")
    return parser.parse_args(argvish)


def validate_args(argvish):
    """
    Parse device options and report whether any device filter option was
    used, as opposed to positional search values.

    :returns: (used_options, options, positional args)
    """
    opts, args = parse_args(argvish)
    # zero is a real value for id, region, zone and weight
    used_options = any(getattr(opts, key) not in (None, '')
                       for key in SEARCH_KEYS)
    return (used_options, opts, args)


def parse_builder_ring_filename_args(argvish):
    """
    Work out the builder and ring file names from the first command line
    argument, which may name either one. ``object.builder`` and
    ``object.ring.gz`` both give ``('object.builder', 'object.ring.gz')``;
    any other name is used as the builder file as is.
    """
    name = argvish[1]
    if name.endswith('.ring.gz'):
        return name[:-len('.ring.gz')] + '.builder', name
    if name.endswith('.builder'):
        return name, name[:-len('.builder')] + '.ring.gz'
    return name, name + '.ring.gz'


def build_dev_from_opts(opts):
    """
    Turn ``add`` command options into keyword arguments for
    :meth:`RingBuilder.add_dev`. Replication ip and port default to the
    regular ones.

    :raises ValueError: if a required option is missing or invalid
    """
    for short, attr, _kind, _text in DEVICE_OPTIONS:
        if attr in ('region', 'zone', 'ip', 'port', 'device', 'weight') \
                and getattr(opts, attr, None) is None:
            raise ValueError('Required argument -%s/--%s not specified.' %
                             (short, attr))
    if not validate_device_name(opts.device):
        raise ValueError('Invalid device name')

    dev = {'region': opts.region, 'zone': opts.zone,
           'ip': validate_and_normalize_address(opts.ip),
           'port': opts.port, 'device': opts.device, 'meta': opts.meta,
           'replication_ip': validate_and_normalize_address(
               opts.replication_ip or opts.ip),
           'replication_port': opts.replication_port or opts.port,
           'weight': opts.weight}
    if opts.id is not None:
        dev['id'] = opts.id
    return dev


def format_device(region=None, zone=None, ip=None, device=None, **kwargs):
    """
    Short ``r<region>z<zone>-<ip>/<device>`` label for a device dict.
    """
    return "r%sz%s-%s/%s" % (region, zone, ip, device)
