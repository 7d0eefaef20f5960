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

from eventlet import Timeout


class MessageTimeout(Timeout):

    def __init__(self, seconds=None, msg=None):
        Timeout.__init__(self, seconds=seconds)
        self.msg = msg

    def __str__(self):
        return '%s: %s' % (Timeout.__str__(self), self.msg)


class LockTimeout(MessageTimeout):
    pass


class RingKeeperException(Exception):
    pass


class RingLoadError(RingKeeperException):
    pass


class RingBuilderError(RingKeeperException):
    pass


class RingValidationError(RingBuilderError):
    pass


class EmptyRingError(RingBuilderError):
    pass


class DuplicateDeviceError(RingBuilderError):
    pass


class DeviceNotFoundError(RingBuilderError):
    pass


class UnPicklingError(RingKeeperException):
    pass


class FileNotFoundError(RingKeeperException):
    pass


class PermissionError(RingKeeperException):
    pass


class QueueStoreError(RingKeeperException):
    pass


class DatabaseConnectionError(QueueStoreError):
    """More friendly error messages for DB Errors."""

    def __init__(self, path, msg, timeout=0):
        super(DatabaseConnectionError, self).__init__(path, msg, timeout)
        self.path = path
        self.timeout = timeout
        self.msg = msg

    def __str__(self):
        return 'DB connection error (%s, %s):\n%s' % (
            self.path, self.timeout, self.msg)
