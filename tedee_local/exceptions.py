#
# Copyright 2025 The TedeeLocal contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#

"""Exceptions raised by Tedee Local."""

from typing import Any, Optional


class TedeeLocalError(Exception):
    """Base class for all Tedee Local errors."""


class TedeeApiError(TedeeLocalError):
    """A request to the bridge failed.

    Carries the HTTP status and response body when the bridge answered;
    transport failures leave both as None and chain the original exception.
    """

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class TedeeResponseError(TedeeApiError):
    """The bridge answered with a body that does not have the expected shape."""


class CommandRejectedError(TedeeLocalError):
    """A lock command was refused before contacting the bridge."""


class LockBusyError(CommandRejectedError):
    """Another command for the same lock is still in progress."""


class UnlockDisabledError(CommandRejectedError):
    """Unlocking is disabled for this lock in the configuration."""


class InvalidTargetError(CommandRejectedError):
    """The requested target state or surface is not valid."""


class CommunicationError(TedeeLocalError):
    """A command was sent to the bridge but did not succeed."""


class WebhookError(TedeeLocalError):
    """Base class for webhook payload errors."""


class UnknownEventError(WebhookError):
    """The webhook carried an event type we do not know."""


class MalformedEventError(WebhookError):
    """The webhook body or its data object could not be parsed."""
