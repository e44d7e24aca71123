# Copyright 2026 The unmixing Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Enums and default tunables shared by the unmixing equations."""

import enum


class BlendMode(enum.Enum):
  """Separable blend modes of W3C Compositing and Blending Level 1."""
  NORMAL = 'normal'
  MULTIPLY = 'multiply'
  SCREEN = 'screen'
  OVERLAY = 'overlay'
  DARKEN = 'darken'
  LIGHTEN = 'lighten'
  COLOR_DODGE = 'color-dodge'
  COLOR_BURN = 'color-burn'
  HARD_LIGHT = 'hard-light'
  SOFT_LIGHT = 'soft-light'
  DIFFERENCE = 'difference'
  EXCLUSION = 'exclusion'
  LINEAR_DODGE = 'linear-dodge'
  LINEAR_BURN = 'linear-burn'


class CompositeOperator(enum.Enum):
  """Porter-Duff compositing operators."""
  SOURCE_OVER = 'source-over'
  SOURCE_ATOP = 'source-atop'
  SOURCE_IN = 'source-in'
  SOURCE_OUT = 'source-out'
  DESTINATION_OVER = 'destination-over'
  DESTINATION_ATOP = 'destination-atop'
  DESTINATION_IN = 'destination-in'
  DESTINATION_OUT = 'destination-out'
  XOR = 'xor'


# Scale of the color prior term relative to the alpha regularizers.
DEFAULT_SIGMA = 0.1

SPARSITY_WEIGHT = 1.0

# Alphas below MINIMUM_ALPHA are penalized quadratically.
MINIMUM_ALPHA = 0.05
MINIMUM_ALPHA_WEIGHT = 10.0
