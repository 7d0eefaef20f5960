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
Access to the replication queue state written by cluster scanners.

The dispersion report only reads from the store; the writers exist for the
scanners that feed it (and for tests).
"""

import os
import sqlite3
import time
import traceback

from collections import namedtuple
from contextlib import contextmanager, closing

from eventlet import sleep, Timeout

from ringkeeper.common.exceptions import DatabaseConnectionError, \
    LockTimeout, QueueStoreError

#: Timeout for connecting to and locking the queue database
DB_TIMEOUT = 25

QueuedReplication = namedtuple(
    'QueuedReplication', ['partition', 'destination_device_id', 'timestamp'])

ProcessPass = namedtuple(
    'ProcessPass', ['start', 'last_update', 'progress', 'complete'])


class ReplicationQueueStore(object):
    """
    The queries the dispersion report makes of the replication queue.
    ``ring_type`` is ``container`` or ``object``; the container ring always
    uses policy index 0. Timestamps are unix times as floats, ``None`` when
    unset.
    """

    def queued_replications(self, ring_type, policy_index, tag):
        """
        :returns: list of :class:`QueuedReplication`
        """
        raise NotImplementedError()

    def count_of_services_with_errors(self, ring_type, policy_index):
        raise NotImplementedError()

    def count_of_devices_with_errors(self, ring_type, policy_index):
        raise NotImplementedError()

    def process_pass(self, process, ring_type, policy_index):
        """
        :returns: :class:`ProcessPass` for the latest pass of ``process``
        """
        raise NotImplementedError()


def _db_timeout(timeout, db_file, call):
    with LockTimeout(timeout, db_file):
        retry_wait = 0.001
        while True:
            try:
                return call()
            except sqlite3.OperationalError as e:
                if 'locked' not in str(e):
                    raise
            sleep(retry_wait)
            retry_wait = min(retry_wait * 2, 0.05)


class GreenDBConnection(sqlite3.Connection):
    """SQLite DB Connection handler that plays well with eventlet."""

    def __init__(self, database, timeout=None, *args, **kwargs):
        if timeout is None:
            timeout = DB_TIMEOUT
        self.timeout = timeout
        self.db_file = database
        super(GreenDBConnection, self).__init__(database, 0, *args, **kwargs)

    def cursor(self, cls=None):
        if cls is None:
            cls = GreenDBCursor
        return sqlite3.Connection.cursor(self, cls)

    def commit(self):
        return _db_timeout(
            self.timeout, self.db_file,
            lambda: sqlite3.Connection.commit(self))


class GreenDBCursor(sqlite3.Cursor):
    """SQLite Cursor handler that plays well with eventlet."""

    def __init__(self, *args, **kwargs):
        self.timeout = args[0].timeout
        self.db_file = args[0].db_file
        super(GreenDBCursor, self).__init__(*args, **kwargs)

    def execute(self, *args, **kwargs):
        return _db_timeout(
            self.timeout, self.db_file, lambda: sqlite3.Cursor.execute(
                self, *args, **kwargs))


def get_db_connection(path, timeout=30, okay_to_create=False):
    """
    Returns a properly configured SQLite database connection.

    :param path: path to DB
    :param timeout: timeout for connection
    :param okay_to_create: if True, create the DB if it doesn't exist
    :returns: DB connection object
    """
    try:
        connect_time = time.time()
        conn = sqlite3.connect(path, check_same_thread=False,
                               factory=GreenDBConnection, timeout=timeout)
        if path != ':memory:' and not okay_to_create:
            # attempt to detect and fail when connect creates the db file
            stat = os.stat(path)
            if stat.st_size == 0 and stat.st_ctime >= connect_time:
                os.unlink(path)
                raise DatabaseConnectionError(path,
                                              'DB file created by connect?')
        conn.row_factory = sqlite3.Row
        conn.text_factory = str
        with closing(conn.cursor()) as cur:
            cur.execute('PRAGMA synchronous = NORMAL')
            cur.execute('PRAGMA temp_store = MEMORY')
            cur.execute('PRAGMA journal_mode = DELETE')
    except (sqlite3.DatabaseError, OSError):
        raise DatabaseConnectionError(path, traceback.format_exc(),
                                      timeout=timeout)
    return conn


class SqliteReplicationQueueStore(ReplicationQueueStore):
    """
    A :class:`ReplicationQueueStore` kept in a single SQLite database file.

    :param db_file: path of the database; ``:memory:`` keeps it in process
    :param timeout: seconds to wait for the database lock
    :param okay_to_create: create the database and its tables if missing
    """

    def __init__(self, db_file, timeout=DB_TIMEOUT, okay_to_create=False):
        self.db_file = db_file
        self.timeout = timeout
        self.okay_to_create = okay_to_create
        self.conn = None

    def __str__(self):
        return self.db_file

    def _connect(self):
        if self.db_file != ':memory:' and not self.okay_to_create and \
                not os.path.exists(self.db_file):
            raise DatabaseConnectionError(self.db_file, "DB doesn't exist")
        conn = get_db_connection(self.db_file, self.timeout,
                                 okay_to_create=self.okay_to_create)
        try:
            self._initialize(conn)
        except sqlite3.DatabaseError:
            conn.close()
            raise DatabaseConnectionError(self.db_file,
                                          traceback.format_exc(),
                                          timeout=self.timeout)
        return conn

    def _initialize(self, conn):
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS queued_replication (
                ring_type TEXT NOT NULL,
                policy INTEGER NOT NULL,
                partition INTEGER NOT NULL,
                to_device_id INTEGER NOT NULL,
                tag TEXT NOT NULL,
                created REAL NOT NULL,
                PRIMARY KEY (ring_type, policy, partition, to_device_id, tag)
            );

            CREATE TABLE IF NOT EXISTS process_pass (
                process TEXT NOT NULL,
                ring_type TEXT NOT NULL,
                policy INTEGER NOT NULL,
                start_date REAL,
                progress_date REAL,
                progress TEXT NOT NULL DEFAULT '',
                complete_date REAL,
                PRIMARY KEY (process, ring_type, policy)
            );

            CREATE TABLE IF NOT EXISTS server_error (
                ring_type TEXT NOT NULL,
                policy INTEGER NOT NULL,
                ip TEXT NOT NULL,
                port INTEGER NOT NULL,
                created REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS device_error (
                ring_type TEXT NOT NULL,
                policy INTEGER NOT NULL,
                device_id INTEGER NOT NULL,
                created REAL NOT NULL
            );
        """)
        conn.commit()

    @contextmanager
    def get(self):
        """Use with the "with" statement; returns a database connection."""
        if not self.conn:
            self.conn = self._connect()
        conn = self.conn
        self.conn = None
        try:
            yield conn
            conn.rollback()
            self.conn = conn
        except sqlite3.DatabaseError:
            conn.close()
            raise QueueStoreError('Error querying %s:\n%s' % (
                self.db_file, traceback.format_exc()))
        except (Exception, Timeout):
            conn.close()
            raise

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    def queued_replications(self, ring_type, policy_index, tag):
        with self.get() as conn:
            rows = conn.execute('''
                SELECT partition, to_device_id, created
                FROM queued_replication
                WHERE ring_type = ? AND policy = ? AND tag = ?
                ORDER BY partition, to_device_id
            ''', (ring_type, policy_index, tag)).fetchall()
        return [QueuedReplication(row['partition'], row['to_device_id'],
                                  row['created'])
                for row in rows]

    def count_of_services_with_errors(self, ring_type, policy_index):
        with self.get() as conn:
            row = conn.execute('''
                SELECT COUNT(*) FROM (
                    SELECT DISTINCT ip, port FROM server_error
                    WHERE ring_type = ? AND policy = ?
                )
            ''', (ring_type, policy_index)).fetchone()
        return row[0]

    def count_of_devices_with_errors(self, ring_type, policy_index):
        with self.get() as conn:
            row = conn.execute('''
                SELECT COUNT(DISTINCT device_id) FROM device_error
                WHERE ring_type = ? AND policy = ?
            ''', (ring_type, policy_index)).fetchone()
        return row[0]

    def process_pass(self, process, ring_type, policy_index):
        with self.get() as conn:
            row = conn.execute('''
                SELECT start_date, progress_date, progress, complete_date
                FROM process_pass
                WHERE process = ? AND ring_type = ? AND policy = ?
            ''', (process, ring_type, policy_index)).fetchone()
        if not row:
            return ProcessPass(None, None, '', None)
        return ProcessPass(row['start_date'], row['progress_date'],
                           row['progress'], row['complete_date'])

    def queue_replication(self, ring_type, policy_index, partition,
                          to_device_id, tag, timestamp=None):
        if timestamp is None:
            timestamp = time.time()
        with self.get() as conn:
            conn.execute('''
                INSERT OR REPLACE INTO queued_replication
                (ring_type, policy, partition, to_device_id, tag, created)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (ring_type, policy_index, partition, to_device_id, tag,
                  timestamp))
            conn.commit()

    def clear_queued_replication(self, ring_type, policy_index, partition,
                                 to_device_id, tag):
        with self.get() as conn:
            conn.execute('''
                DELETE FROM queued_replication
                WHERE ring_type = ? AND policy = ? AND partition = ?
                AND to_device_id = ? AND tag = ?
            ''', (ring_type, policy_index, partition, to_device_id, tag))
            conn.commit()

    def start_pass(self, process, ring_type, policy_index, progress='',
                   timestamp=None):
        if timestamp is None:
            timestamp = time.time()
        with self.get() as conn:
            conn.execute('''
                INSERT OR REPLACE INTO process_pass
                (process, ring_type, policy, start_date, progress_date,
                 progress, complete_date)
                VALUES (?, ?, ?, ?, ?, ?, NULL)
            ''', (process, ring_type, policy_index, timestamp, timestamp,
                  progress))
            conn.commit()

    def update_pass(self, process, ring_type, policy_index, progress,
                    timestamp=None):
        if timestamp is None:
            timestamp = time.time()
        with self.get() as conn:
            conn.execute('''
                UPDATE process_pass SET progress = ?, progress_date = ?
                WHERE process = ? AND ring_type = ? AND policy = ?
            ''', (progress, timestamp, process, ring_type, policy_index))
            conn.commit()

    def complete_pass(self, process, ring_type, policy_index,
                      timestamp=None):
        if timestamp is None:
            timestamp = time.time()
        with self.get() as conn:
            conn.execute('''
                UPDATE process_pass SET complete_date = ?, progress_date = ?
                WHERE process = ? AND ring_type = ? AND policy = ?
            ''', (timestamp, timestamp, process, ring_type, policy_index))
            conn.commit()

    def record_service_error(self, ring_type, policy_index, ip, port,
                             timestamp=None):
        if timestamp is None:
            timestamp = time.time()
        with self.get() as conn:
            conn.execute('''
                INSERT INTO server_error (ring_type, policy, ip, port, created)
                VALUES (?, ?, ?, ?, ?)
            ''', (ring_type, policy_index, ip, port, timestamp))
            conn.commit()

    def record_device_error(self, ring_type, policy_index, device_id,
                            timestamp=None):
        if timestamp is None:
            timestamp = time.time()
        with self.get() as conn:
            conn.execute('''
                INSERT INTO device_error (ring_type, policy, device_id,
                                          created)
                VALUES (?, ?, ?, ?)
            ''', (ring_type, policy_index, device_id, timestamp))
            conn.commit()
