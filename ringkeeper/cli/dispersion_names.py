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

from optparse import OptionParser
from sys import exit
from time import time

from eventlet import GreenPool
from eventlet.event import Event
from eventlet.queue import LightQueue

from ringkeeper.common.cluster import ClusterContext
from ringkeeper.common.dispersion import generate_dispersion_names, \
    object_container_name, CONTAINER_PREFIX
from ringkeeper.common.exceptions import RingKeeperException
from ringkeeper.common.utils import readconf, get_logger, \
    get_prefixed_logger, get_time_units, config_positive_int_value


def print_names(names, limit=None):
    """
    Print names from the queue until the end marker (or ``limit`` names).

    :returns: number of names printed
    """
    printed = 0
    while limit is None or printed < limit:
        name = names.get()
        if name is None:
            break
        print(name)
        printed += 1
    return printed


def main(arguments=None):
    conffile = '/etc/ringkeeper/dispersion.conf'

    parser = OptionParser(usage='''
Usage: %%prog [options] [conf_file]

Prints one dispersion probe name per partition of a ring.

[conf_file] defaults to %s'''.strip() % conffile)
    parser.add_option('-P', '--policy-index', type='int', default=None,
                      help='name objects for this storage policy index '
                           'instead of naming containers')
    parser.add_option('-w', '--workers', type='int', default=None,
                      help='number of green threads hashing names')
    parser.add_option('-l', '--limit', type='int', default=None,
                      help='stop after this many names')

    options, args = parser.parse_args(arguments)
    if args:
        conffile = args.pop(0)

    try:
        conf = readconf(conffile, 'dispersion')
    except (IOError, ValueError) as err:
        exit('Unable to read config file: %s (%s)' % (conffile, err))

    try:
        workers = options.workers
        if workers is not None:
            workers = config_positive_int_value(workers)
        context = ClusterContext.from_conf(conf)
        if options.policy_index is None:
            ring_type, policy_index = 'container', 0
            container, prefix = '', CONTAINER_PREFIX
        else:
            ring_type, policy_index = 'object', options.policy_index
            if context.policies.get_by_index(policy_index) is None:
                exit('Unknown storage policy index: %d' % policy_index)
            container, prefix = object_container_name(policy_index), ''
        ring = context.get_ring(ring_type, policy_index)
    except (IOError, ValueError, RingKeeperException) as err:
        exit('Unable to load ring: %s' % err)

    logger = get_prefixed_logger(
        get_logger(conf, log_route='dispersion-names'),
        '%s ring %d: ' % (ring_type, policy_index))

    begun = time()
    names = LightQueue()
    cancel = Event()
    pool = GreenPool(1)
    pool.spawn(generate_dispersion_names, container, prefix, ring, names,
               cancel=cancel, workers=workers)
    try:
        printed = print_names(names, options.limit)
    finally:
        cancel.send()
        pool.waitall()
    elapsed, elapsed_unit = get_time_units(time() - begun)
    logger.info('Named %d of %d partitions in %.02f%s',
                printed, ring.partition_count, elapsed, elapsed_unit)
    exit(0)


if __name__ == '__main__':
    main()
