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

import re
import textwrap

from ringkeeper.common.utils import config_true_value, parse_prefixed_conf

LEGACY_POLICY_NAME = 'Policy-0'
VALID_CHARS = '-' + 'abcdefghijklmnopqrstuvwxyz' + \
    'ABCDEFGHIJKLMNOPQRSTUVWXYZ' + '0123456789'
POLICY_SECTION_PREFIX = 'storage-policy:'


class PolicyError(ValueError):
    def __init__(self, msg, index=None):
        if index is not None:
            msg += ', for index %r' % index
        super(PolicyError, self).__init__(msg)


def get_policy_string(base, policy_or_index):
    """
    Helper function to construct a string from a base and the policy.
    Used to name the object ring of a policy; policy index 0 maps to the
    bare base name.

    :param base: the base string
    :param policy_or_index: StoragePolicy instance or an index

    :returns: base name with policy index added
    """
    policy_index = int(policy_or_index)
    if policy_index == 0:
        return base
    return '%s-%d' % (base, policy_index)


class StoragePolicy(object):
    """
    Represents one object storage policy: an index, used to find the
    policy's object ring, and a human readable name.
    """

    def __init__(self, idx, name='', is_default=False):
        try:
            self.idx = int(idx)
        except (TypeError, ValueError):
            raise PolicyError('Invalid index', idx)
        if self.idx < 0:
            raise PolicyError('Invalid index', idx)
        self._validate_policy_name(name)
        self.name = name
        self.is_default = config_true_value(is_default)
        self.ring_name = get_policy_string('object', self.idx)

    def __int__(self):
        return self.idx

    def __eq__(self, other):
        return self.idx == int(other)

    def __ne__(self, other):
        return self.idx != int(other)

    def __lt__(self, other):
        return self.idx < int(other)

    def __gt__(self, other):
        return self.idx > int(other)

    def __hash__(self):
        return hash(self.idx)

    def __repr__(self):
        return "%s(%d, %r, is_default=%s)" % (
            self.__class__.__name__, self.idx, self.name, self.is_default)

    def _validate_policy_name(self, name):
        """
        Helper function to determine the validity of a policy name.

        :param name: a name string for a single policy name.
        :raises PolicyError: if the policy name is invalid.
        """
        if not name:
            raise PolicyError('Invalid name %r' % name, self.idx)
        # this is defensively restrictive, but could be expanded in the future
        if not all(c in VALID_CHARS for c in name):
            msg = 'Names are used as HTTP headers, and can not ' \
                  'reliably contain any characters not in %r. ' \
                  'Invalid name %r' % (VALID_CHARS, name)
            raise PolicyError(msg, self.idx)
        if name.upper() == LEGACY_POLICY_NAME.upper() and self.idx != 0:
            msg = 'The name %s is reserved for policy index 0. ' \
                  'Invalid name %r' % (LEGACY_POLICY_NAME, name)
            raise PolicyError(msg, self.idx)


class StoragePolicyCollection(object):
    """
    This class represents the collection of valid storage policies for the
    cluster, as parsed from ``ringkeeper.conf`` by
    :func:`parse_storage_policies`.

    When a StoragePolicyCollection is created, the following validation
    is enforced:

    * If no policies are defined, a policy with index 0 named Policy-0 is
      created and made the default
    * Policy indexes must be unique
    * Policy names are case insensitive and must be unique
    * If more than one policy is defined, exactly one is the default
    """

    def __init__(self, pols):
        self.default = None
        self.by_name = {}
        self.by_index = {}
        self._validate_policies(pols)

    def __repr__(self):
        return (textwrap.dedent("""
    StoragePolicyCollection([
        %s
    ])
    """) % ',\n    '.join(repr(p) for p in self)).strip()

    def __len__(self):
        return len(self.by_index)

    def __getitem__(self, key):
        return self.by_index[key]

    def __iter__(self):
        return iter(self.by_index.values())

    def _validate_policies(self, policies):
        for policy in policies:
            if int(policy) in self.by_index:
                raise PolicyError('Duplicate index %s conflicts with %s' % (
                    policy, self.get_by_index(int(policy))))
            if policy.name.upper() in self.by_name:
                raise PolicyError('Duplicate name %s conflicts with %s' % (
                    policy, self.get_by_name(policy.name)))
            if policy.is_default:
                if self.default is None:
                    self.default = policy
                else:
                    raise PolicyError(
                        'Duplicate default %s conflicts with %s' % (
                            policy, self.default))
            self.by_name[policy.name.upper()] = policy
            self.by_index[int(policy)] = policy

        if not self.by_index:
            policy = StoragePolicy(0, name=LEGACY_POLICY_NAME)
            self.by_name[policy.name.upper()] = policy
            self.by_index[0] = policy

        if self.default is None:
            if len(self) > 1:
                raise PolicyError("Unable to find default policy")
            self.default = next(iter(self))
            self.default.is_default = True

    def get_by_name(self, name):
        """
        Find a storage policy by its name.

        :param name: name of the policy
        :returns: storage policy, or None
        """
        return self.by_name.get(name.upper())

    def get_by_index(self, index):
        """
        Find a storage policy by its index.

        An index of None will be treated as 0.

        :param index: numeric index of the storage policy
        :returns: storage policy, or None if no such policy
        """
        if index in ('', None):
            index = 0
        else:
            try:
                index = int(index)
            except ValueError:
                return None
        return self.by_index.get(index)

    def indexes(self):
        """
        :returns: the policy indexes in ascending order
        """
        return sorted(self.by_index)


def parse_storage_policies(conf_file):
    """
    Parse the ``[storage-policy:N]`` sections of ``ringkeeper.conf``.
    Validation is done when the :class:`StoragePolicyCollection` is
    instantiated.

    :param conf_file: path to ringkeeper.conf, or a file-like object
    :raises PolicyError: if a policy section is invalid
    """
    policies = []
    for policy_index, options in parse_prefixed_conf(
            conf_file, POLICY_SECTION_PREFIX).items():
        if not re.match(r'^\d+$', policy_index):
            raise PolicyError('Malformed policy section %r' % (
                POLICY_SECTION_PREFIX + policy_index))
        policies.append(StoragePolicy(
            policy_index, name=options.get('name', ''),
            is_default=options.get('default', False)))
    return StoragePolicyCollection(policies)
