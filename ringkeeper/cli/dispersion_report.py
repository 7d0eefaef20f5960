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
from optparse import OptionParser
from sys import exit

from eventlet import hubs, patcher

from ringkeeper.common.cluster import ClusterContext
from ringkeeper.common.dispersion import get_dispersion_report
from ringkeeper.common.exceptions import RingKeeperException
from ringkeeper.common.utils import readconf, get_logger, config_true_value


def main(arguments=None):
    patcher.monkey_patch()
    hubs.get_hub().debug_exceptions = False

    conffile = '/etc/ringkeeper/dispersion.conf'

    parser = OptionParser(usage='''
Usage: %%prog [options] [conf_file]

[conf_file] defaults to %s'''.strip() % conffile)
    parser.add_option('-j', '--dump-json', action='store_true', default=False,
                      help='dump dispersion report in json format')
    parser.add_option('-v', '--verbose', action='store_true', default=False,
                      help='log errors to standard error as well')

    options, args = parser.parse_args(arguments)
    if args:
        conffile = args.pop(0)

    try:
        conf = readconf(conffile, 'dispersion')
    except (IOError, ValueError) as err:
        exit('Unable to read config file: %s (%s)' % (conffile, err))

    if options.dump_json:
        conf['dump_json'] = 'yes'
    if options.verbose:
        conf['log_to_console'] = 'yes'

    logger = get_logger(conf, log_route='dispersion-report')
    try:
        context = ClusterContext.from_conf(conf)
    except (IOError, ValueError, RingKeeperException) as err:
        exit('Unable to set up cluster: %s' % err)

    report = get_dispersion_report(context, logger=logger)
    if config_true_value(conf.get('dump_json', 'no')):
        print(json.dumps(report.to_dict(), sort_keys=True))
    else:
        print(report.render(), end='')
    exit(0 if report.passed else 1)


if __name__ == '__main__':
    main()
