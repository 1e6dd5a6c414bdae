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
"""Tedee Local - webhook-driven REST API for Tedee locks via the Tedee bridge."""

from .__version__ import __version__

__author__ = "Tedee Local Contributors"
__description__ = "Webhook-driven REST API for Tedee locks via the Tedee bridge"

from .api import TedeeLocalAPI
from .client import TedeeLocalClient
from .controller import CurrentState, LockController, Surface, TargetState
from .exceptions import (
    CommunicationError,
    InvalidTargetError,
    LockBusyError,
    TedeeApiError,
    TedeeLocalError,
    UnlockDisabledError,
)
from .models import DeviceConfiguration, Lock, LockState
from .registry import DeviceRegistry

__all__ = [
    "__version__",
    "TedeeLocalAPI",
    "TedeeLocalClient",
    "LockController",
    "DeviceRegistry",
    "CurrentState",
    "TargetState",
    "Surface",
    "Lock",
    "LockState",
    "DeviceConfiguration",
    "TedeeLocalError",
    "TedeeApiError",
    "CommunicationError",
    "InvalidTargetError",
    "LockBusyError",
    "UnlockDisabledError",
]
