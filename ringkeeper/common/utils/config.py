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

import configparser
from configparser import ConfigParser, RawConfigParser

TRUE_VALUES = {'true', '1', 'yes', 'on', 't', 'y'}


def config_true_value(value):
    """
    Returns True if the value is either True or a string in TRUE_VALUES.
    Returns False otherwise.
    """
    return value is True or \
        (isinstance(value, str) and value.lower() in TRUE_VALUES)


def non_negative_float(value):
    """
    Cast a numeric option such as ``db_timeout`` to a float, refusing
    negatives.

    :raises ValueError: if the value is not a number or is below zero
    """
    try:
        result = float(value)
        if result < 0:
            raise ValueError
    except (TypeError, ValueError):
        raise ValueError('Value must be a non-negative float number, '
                         'not "%s".' % (value,))
    return result


def config_positive_int_value(value):
    """
    Cast an option such as ``concurrency`` to an int of at least 1.

    :raises ValueError: for zero, negatives and anything int() refuses
    """
    try:
        result = int(value)
        if result < 1:
            raise ValueError()
    except (TypeError, ValueError):
        raise ValueError(
            'Config option must be a positive integer, not "%s".' % value)
    return result


class NicerInterpolation(configparser.BasicInterpolation):
    """Interpolation that leaves values without ``%(`` untouched."""

    def before_get(self, parser, section, option, value, defaults):
        if '%(' not in value:
            return value
        return super(NicerInterpolation, self).before_get(
            parser, section, option, value, defaults)


def _load_parser(conf_path, defaults, raw):
    if raw:
        parser = RawConfigParser(defaults, strict=False)
    else:
        parser = ConfigParser(defaults, interpolation=NicerInterpolation(),
                              strict=False)
    parser.optionxform = str  # option names are case sensitive

    if hasattr(conf_path, 'readline'):
        if hasattr(conf_path, 'seek'):
            conf_path.seek(0)
        parser.read_file(conf_path)
    elif not parser.read(conf_path):
        raise IOError("Unable to read config from %s" % conf_path)
    return parser


def readconf(conf_path, section_name=None, log_name=None, defaults=None,
             raw=False):
    """
    Read an ini style config file.

    With ``section_name`` the options of that one section come back as a
    flat dict; without it the result maps every section name to its
    options. Either way ``log_name`` is filled in (from the argument, or
    the section name) when the file does not set it, and ``__file__``
    records where the config came from.

    :param conf_path: path to the config file, or an open file-like object
    :param section_name: the section to return
    :param log_name: fallback for the ``log_name`` option
    :param defaults: values every section inherits
    :param raw: skip ``%(name)s`` interpolation
    :raises ValueError: if ``section_name`` is not in the file
    :raises IOError: if the file cannot be read
    """
    parser = _load_parser(conf_path, defaults or {}, raw)
    if section_name:
        if not parser.has_section(section_name):
            raise ValueError(
                "Unable to find %(section)s config section in %(conf)s" %
                {'section': section_name, 'conf': conf_path})
        conf = dict(parser.items(section_name))
        conf.setdefault('log_name', log_name or section_name)
    else:
        conf = dict((s, dict(parser.items(s))) for s in parser.sections())
        conf.setdefault('log_name', log_name)
    conf['__file__'] = conf_path
    return conf


def parse_prefixed_conf(conf_file, prefix):
    """
    Collect the sections whose names start with ``prefix``, keyed by the
    rest of the section name. Storage policies use this to find their
    ``[storage-policy:N]`` sections.

    :raises ValueError: if a section is named exactly ``prefix``
    """
    found = {}
    for section, options in readconf(conf_file).items():
        if not isinstance(options, dict) or not section.startswith(prefix):
            continue
        ref = section[len(prefix):]
        if not ref:
            raise ValueError('Invalid section name %r in %s' %
                             (section, conf_file))
        found[ref] = options
    return found
