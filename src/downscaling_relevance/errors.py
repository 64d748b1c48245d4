# Copyright 2025 Poke & Wiggle GmbH. All rights reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


class RelevanceError(Exception):
    """Base class for all errors raised while computing relevance maps."""


class ConfigurationError(RelevanceError, ValueError):
    """Shapes of model, inputs and locations do not fit together."""


class DomainError(RelevanceError, ValueError):
    """A parameter lies outside its valid domain (e.g. location off the grid)."""


class NumericalError(RelevanceError, ArithmeticError):
    """Loss or expectation evaluation produced non-finite values."""

    def __init__(self, message, sample_index=None):
        super().__init__(message)
        self.sample_index = sample_index
