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
The explicit view of a cluster handed to the dispersion tools: where its
rings live, how it hashes paths, which storage policies it has and where its
replication queue is kept.
"""

import os
from configparser import ConfigParser, NoOptionError, NoSectionError

from ringkeeper.common.queue_store import SqliteReplicationQueueStore, \
    DB_TIMEOUT
from ringkeeper.common.ring import Ring
from ringkeeper.common.storage_policy import get_policy_string, \
    parse_storage_policies, StoragePolicyCollection
from ringkeeper.common.utils import non_negative_float

DEFAULT_SWIFT_DIR = '/etc/ringkeeper'
CLUSTER_CONF_NAME = 'ringkeeper.conf'
DEFAULT_QUEUE_DB = 'replication_queue.db'


def read_hash_conf(conf_file):
    """
    Read the hash path prefix and suffix from the ``[hash]`` section.

    :param conf_file: path to ringkeeper.conf
    :returns: (prefix, suffix) as bytes; either may be empty
    """
    hash_conf = ConfigParser()
    # Use Latin1 to accept arbitrary bytes in the hash prefix/suffix
    with open(conf_file, encoding='latin1') as cluster_conf_file:
        hash_conf.read_file(cluster_conf_file)
    affixes = []
    for option in ('hash_path_prefix', 'hash_path_suffix'):
        try:
            affixes.append(hash_conf.get('hash', option).encode('latin1'))
        except (NoSectionError, NoOptionError):
            affixes.append(b'')
    return tuple(affixes)


class ClusterContext(object):
    """
    Bundles ring loading, the policy registry and the replication queue
    store of one cluster.

    :param swift_dir: directory holding the ``*.ring.gz`` files
    :param policies: a :class:`StoragePolicyCollection`; defaults to the
                     single policy 0
    :param queue_store: a
        :class:`~ringkeeper.common.queue_store.ReplicationQueueStore`
    :param hash_path_prefix: bytes prepended to every hashed path
    :param hash_path_suffix: bytes appended to every hashed path
    :param reload_time: ring reload interval in seconds
    """

    def __init__(self, swift_dir=DEFAULT_SWIFT_DIR, policies=None,
                 queue_store=None, hash_path_prefix=b'',
                 hash_path_suffix=b'', reload_time=None):
        self.swift_dir = swift_dir
        if policies is None:
            policies = StoragePolicyCollection([])
        self.policies = policies
        self.queue_store = queue_store
        self.hash_path_prefix = hash_path_prefix
        self.hash_path_suffix = hash_path_suffix
        self.reload_time = reload_time
        self._rings = {}

    @classmethod
    def from_conf(cls, conf):
        """
        Build a context from the ``[dispersion]`` options.

        ``swift_dir`` names the directory holding the rings and
        ``ringkeeper.conf``; ``queue_db`` is the replication queue database
        (relative paths are taken from ``swift_dir``) and ``db_timeout`` its
        lock timeout.

        :raises PolicyError: if the storage policies are misconfigured
        :raises IOError: if ringkeeper.conf cannot be read
        """
        swift_dir = conf.get('swift_dir', DEFAULT_SWIFT_DIR)
        cluster_conf = os.path.join(swift_dir, CLUSTER_CONF_NAME)
        if os.path.exists(cluster_conf):
            prefix, suffix = read_hash_conf(cluster_conf)
            policies = parse_storage_policies(cluster_conf)
        else:
            prefix = suffix = b''
            policies = None
        queue_db = os.path.join(swift_dir,
                                conf.get('queue_db', DEFAULT_QUEUE_DB))
        queue_store = SqliteReplicationQueueStore(
            queue_db,
            timeout=non_negative_float(conf.get('db_timeout', DB_TIMEOUT)))
        return cls(swift_dir, policies=policies, queue_store=queue_store,
                   hash_path_prefix=prefix, hash_path_suffix=suffix)

    @staticmethod
    def ring_name(ring_type, policy_index=0):
        """
        :param ring_type: ``container`` or ``object``
        :param policy_index: index of the object policy
        :returns: the ring's file name without ``.ring.gz``
        """
        if ring_type == 'object':
            return get_policy_string('object', policy_index)
        if ring_type == 'container':
            return 'container'
        raise ValueError('Unknown ring type %r' % (ring_type,))

    def get_ring(self, ring_type, policy_index=0):
        """
        Load (once) and return a ring of this cluster.

        :raises RingLoadError: if the ring file is not a valid ring
        :raises IOError: if the ring file cannot be read
        """
        ring_name = self.ring_name(ring_type, policy_index)
        if ring_name not in self._rings:
            self._rings[ring_name] = Ring(
                self.swift_dir, reload_time=self.reload_time,
                ring_name=ring_name,
                hash_path_prefix=self.hash_path_prefix,
                hash_path_suffix=self.hash_path_suffix)
        return self._rings[ring_name]
