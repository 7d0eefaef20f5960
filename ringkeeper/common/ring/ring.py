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
import array
import gzip
import json
from os.path import getmtime
import os
import struct
import sys
from time import time

from ringkeeper.common.exceptions import RingLoadError
from ringkeeper.common.utils import hash_path, mkdirs


DEFAULT_RELOAD_TIME = 15
RING_MAGIC = b'R1NG'
RING_FORMAT_VERSION = 1
# fixed gzip header time, so equal rings give byte-identical files
RING_FILE_MTIME = 1300507380.0


def calc_replica_count(replica2part2dev_id):
    """
    Replica count of an assignment table. The last row may be shorter
    than the others, which gives a fractional count (1.25 for a full row
    plus a quarter row).
    """
    if not replica2part2dev_id:
        return 0
    full_rows = len(replica2part2dev_id) - 1
    return full_rows + (float(len(replica2part2dev_id[-1])) /
                        len(replica2part2dev_id[0]))


def normalize_devices(devs):
    """Default each device's replication address to its service address."""
    for dev in devs:
        if not dev:
            continue
        for key in ('ip', 'port'):
            if key in dev:
                dev.setdefault('replication_' + key, dev[key])


class RingData(object):
    """
    The part of a ring that is written to disk: the device list, the
    replica -> partition -> device id table and the partition shift.
    """

    def __init__(self, replica2part2dev_id, devs, part_shift, version=None):
        normalize_devices(devs)
        self.devs = devs
        self._replica2part2dev_id = [
            row if isinstance(row, array.array) else array.array('H', row)
            for row in replica2part2dev_id]
        self._part_shift = part_shift
        self.version = version

    @property
    def replica_count(self):
        return calc_replica_count(self._replica2part2dev_id)

    @property
    def part_power(self):
        return 32 - self._part_shift

    @classmethod
    def deserialize_v1(cls, gz_file, metadata_only=False):
        """
        Read the body of a version 1 ring file.

        The layout is the magic ``R1NG``, a big-endian format version, a
        big-endian length followed by that many bytes of JSON metadata, and
        then one row of unsigned shorts per replica in the byte order the
        metadata names. Rows may be shorter than the partition count when
        replicas are fractional, which is why reading stops at end of file.

        :param gz_file: decompressed stream positioned at the magic
        :param metadata_only: skip the assignment table
        :returns: dict with ``devs``, ``part_shift``, ``version`` (if any)
                  and ``replica2part2dev_id``
        """
        magic = gz_file.read(6)
        if magic != RING_MAGIC + struct.pack('!H', RING_FORMAT_VERSION):
            raise RingLoadError('unexpected magic: %r' % magic)

        meta_len, = struct.unpack('!I', gz_file.read(4))
        ring_dict = json.loads(gz_file.read(meta_len))
        ring_dict['replica2part2dev_id'] = rows = []
        if metadata_only:
            return ring_dict

        swap = ring_dict.get('byteorder', sys.byteorder) != sys.byteorder
        row_bytes = 2 << (32 - ring_dict['part_shift'])
        for _replica in range(ring_dict['replica_count']):
            row = array.array('H', gz_file.read(row_bytes))
            if swap:
                row.byteswap()
            rows.append(row)
        return ring_dict

    @classmethod
    def load(cls, filename, metadata_only=False):
        """
        Load a ring file written by :meth:`save`.

        :raises RingLoadError: if the file is not a gzipped ring file
        :raises IOError: if the file cannot be opened
        """
        try:
            with gzip.open(filename, 'rb') as gz_file:
                ring_dict = cls.deserialize_v1(gz_file, metadata_only)
        except (gzip.BadGzipFile, EOFError, ValueError, struct.error) as err:
            raise RingLoadError('Invalid ring file %s: %s' % (filename, err))
        return cls.from_dict(ring_dict)

    @classmethod
    def from_dict(cls, ring_dict):
        return cls(ring_dict['replica2part2dev_id'], ring_dict['devs'],
                   ring_dict['part_shift'], ring_dict.get('version'))

    def serialize_v1(self, file_obj):
        meta = {'devs': self.devs, 'part_shift': self._part_shift,
                'replica_count': len(self._replica2part2dev_id),
                'byteorder': sys.byteorder}
        if self.version is not None:
            meta['version'] = self.version
        meta_bytes = json.dumps(meta, sort_keys=True,
                                ensure_ascii=True).encode('ascii')

        file_obj.write(RING_MAGIC + struct.pack('!H', RING_FORMAT_VERSION))
        file_obj.write(struct.pack('!I', len(meta_bytes)))
        file_obj.write(meta_bytes)
        for row in self._replica2part2dev_id:
            file_obj.write(row.tobytes())

    def save(self, filename, mtime=RING_FILE_MTIME):
        """
        Write the ring to ``filename`` through a temp file in the same
        directory, so readers never see a partial ring.

        :param mtime: time stamped into the gzip header; None means now
        """
        dirname = os.path.dirname(filename) or '.'
        mkdirs(dirname)
        basename = os.path.basename(filename)
        tempname = os.path.join(dirname, '.%s.tmp' % basename)
        with open(tempname, 'wb') as raw:
            with gzip.GzipFile(filename=basename, fileobj=raw, mode='wb',
                               mtime=mtime) as gz_file:
                self.serialize_v1(gz_file)
            raw.flush()
            os.fsync(raw.fileno())
        os.rename(tempname, filename)

    def to_dict(self):
        return {'devs': self.devs,
                'replica2part2dev_id': self._replica2part2dev_id,
                'part_shift': self._part_shift,
                'version': self.version}


class Ring(object):
    """
    Read-only view of a ring file that maps names to partitions and
    partitions to devices. The file is checked for changes at most once
    every ``reload_time`` seconds and reloaded when its mtime moves.

    :param serialized_path: the ring file, or the directory holding
                            ``<ring_name>.ring.gz`` when ``ring_name`` is
                            given
    :param reload_time: seconds between checks of the ring file
    :param ring_name: e.g. ``container`` or ``object-1``
    :param hash_path_prefix: cluster secret hashed before each name
    :param hash_path_suffix: cluster secret hashed after each name
    :raises RingLoadError: if the file is not a ring or has no partitions
    """

    def __init__(self, serialized_path, reload_time=None, ring_name=None,
                 hash_path_prefix=b'', hash_path_suffix=b''):
        if ring_name:
            serialized_path = os.path.join(serialized_path,
                                           ring_name + '.ring.gz')
        self.serialized_path = serialized_path
        if reload_time is None:
            reload_time = DEFAULT_RELOAD_TIME
        self.reload_time = reload_time
        self.hash_path_prefix = hash_path_prefix
        self.hash_path_suffix = hash_path_suffix
        self._reload(force=True)

    def _reload(self, force=False):
        self._rtime = time() + self.reload_time
        if not force and not self.has_changed():
            return
        ring_data = RingData.load(self.serialized_path)
        if not ring_data._replica2part2dev_id:
            raise RingLoadError('Ring %s has no partitions assigned' %
                                self.serialized_path)
        self._mtime = getmtime(self.serialized_path)
        self._devs = ring_data.devs
        self._replica2part2dev_id = ring_data._replica2part2dev_id
        self._part_shift = ring_data._part_shift
        self._version = ring_data.version

    def _reload_if_due(self):
        if time() > self._rtime:
            self._reload()

    @property
    def part_power(self):
        return 32 - self._part_shift

    @property
    def version(self):
        return self._version

    @property
    def replica_count(self):
        return calc_replica_count(self._replica2part2dev_id)

    @property
    def partition_count(self):
        return len(self._replica2part2dev_id[0])

    @property
    def devs(self):
        """Device dicts indexed by device id; removed ids hold None."""
        self._reload_if_due()
        return self._devs

    def has_changed(self):
        """True when the ring file's mtime differs from the loaded one."""
        return getmtime(self.serialized_path) != self._mtime

    def _get_part_nodes(self, part):
        nodes = []
        seen = set()
        for row in self._replica2part2dev_id:
            if part >= len(row) or row[part] in seen:
                continue
            seen.add(row[part])
            nodes.append(dict(self.devs[row[part]], index=len(nodes)))
        return nodes

    def get_part(self, account, container=None, obj=None):
        """
        Partition of a name: the top ``part_power`` bits of the salted md5
        of ``/account[/container[/obj]]``.
        """
        digest = hash_path(account, container, obj, raw_digest=True,
                           prefix=self.hash_path_prefix,
                           suffix=self.hash_path_suffix)
        self._reload_if_due()
        return struct.unpack_from('>I', digest)[0] >> self._part_shift

    def get_part_nodes(self, part):
        """
        Devices holding ``part``, in replica order, each listed once and
        tagged with its position as ``index``.

        :returns: list of device dicts, or None when ``part`` is not a
                  partition of this ring
        """
        self._reload_if_due()
        if not 0 <= part < self.partition_count:
            return None
        return self._get_part_nodes(part)

    def get_nodes(self, account, container=None, obj=None):
        """
        Partition and devices for a name; see :meth:`get_part` and
        :meth:`get_part_nodes`.

        Each device dict carries at least ``id``, ``index``, ``weight``,
        ``region``, ``zone``, ``ip``, ``port``, ``device`` and ``meta``.

        :returns: (partition, list of device dicts)
        """
        part = self.get_part(account, container, obj)
        return part, self._get_part_nodes(part)
