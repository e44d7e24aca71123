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

"""Separable blend modes and their derivatives.

Each blend mode B(s, d) combines a source color s with a destination (backdrop)
color d channel by channel. The formulas follow the W3C Compositing and
Blending Level 1 recommendation. Every mode is registered with a pair of
functions: the value B(s, d), and the elementwise partial derivatives
(dB/ds, dB/dd). Modes that are piecewise defined use the derivative of the
branch selected by the value function, so the pair is consistent away from
branch boundaries.
"""

from typing import Callable, NamedTuple, Tuple

import jax.numpy as jnp
from unmixing.jax import constants


class BlendFunction(NamedTuple):
  """Value and elementwise derivative of a separable blend mode."""
  value: Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray]
  derivative: Callable[[jnp.ndarray, jnp.ndarray],
                       Tuple[jnp.ndarray, jnp.ndarray]]


def _normal(s, d):
  del d
  return s


def _d_normal(s, d):
  return jnp.ones_like(s), jnp.zeros_like(d)


def _multiply(s, d):
  return s * d


def _d_multiply(s, d):
  return d, s


def _screen(s, d):
  return s + d - s * d


def _d_screen(s, d):
  return 1.0 - d, 1.0 - s


def _hard_light(s, d):
  return jnp.where(s <= 0.5, 2.0 * s * d,
                   _screen(2.0 * s - 1.0, d))


def _d_hard_light(s, d):
  ds = jnp.where(s <= 0.5, 2.0 * d, 2.0 - 2.0 * d)
  dd = jnp.where(s <= 0.5, 2.0 * s, 2.0 - 2.0 * s)
  return ds, dd


def _overlay(s, d):
  # Overlay is hard light with the roles of source and destination swapped.
  return _hard_light(d, s)


def _d_overlay(s, d):
  dd, ds = _d_hard_light(d, s)
  return ds, dd


def _darken(s, d):
  return jnp.where(s <= d, s, d)


def _d_darken(s, d):
  source_wins = s <= d
  return jnp.where(source_wins, 1.0, 0.0), jnp.where(source_wins, 0.0, 1.0)


def _lighten(s, d):
  return jnp.where(s >= d, s, d)


def _d_lighten(s, d):
  source_wins = s >= d
  return jnp.where(source_wins, 1.0, 0.0), jnp.where(source_wins, 0.0, 1.0)


def _color_dodge(s, d):
  ratio = d / (1.0 - s)
  return jnp.where(d <= 0.0, 0.0,
                   jnp.where(s >= 1.0, 1.0, jnp.minimum(1.0, ratio)))


def _d_color_dodge(s, d):
  inv = 1.0 / (1.0 - s)
  unclipped = (d > 0.0) & (s < 1.0) & (d * inv < 1.0)
  ds = jnp.where(unclipped, d * inv * inv, 0.0)
  dd = jnp.where(unclipped, inv, 0.0)
  return ds, dd


def _color_burn(s, d):
  ratio = (1.0 - d) / s
  return jnp.where(d >= 1.0, 1.0,
                   jnp.where(s <= 0.0, 0.0, 1.0 - jnp.minimum(1.0, ratio)))


def _d_color_burn(s, d):
  inv = 1.0 / s
  unclipped = (d < 1.0) & (s > 0.0) & ((1.0 - d) * inv < 1.0)
  ds = jnp.where(unclipped, (1.0 - d) * inv * inv, 0.0)
  dd = jnp.where(unclipped, inv, 0.0)
  return ds, dd


def _soft_light_d(d):
  return jnp.where(d <= 0.25, ((16.0 * d - 12.0) * d + 4.0) * d, jnp.sqrt(d))


def _soft_light(s, d):
  dark = d - (1.0 - 2.0 * s) * d * (1.0 - d)
  light = d + (2.0 * s - 1.0) * (_soft_light_d(d) - d)
  return jnp.where(s <= 0.5, dark, light)


def _d_soft_light(s, d):
  d_of_d = _soft_light_d(d)
  d_of_d_prime = jnp.where(d <= 0.25, (48.0 * d - 24.0) * d + 4.0,
                           0.5 / jnp.sqrt(d))
  ds = jnp.where(s <= 0.5, 2.0 * d * (1.0 - d), 2.0 * (d_of_d - d))
  dd = jnp.where(s <= 0.5, 1.0 - (1.0 - 2.0 * s) * (1.0 - 2.0 * d),
                 1.0 + (2.0 * s - 1.0) * (d_of_d_prime - 1.0))
  return ds, dd


def _difference(s, d):
  return jnp.abs(s - d)


def _d_difference(s, d):
  sign = jnp.sign(s - d)
  return sign, -sign


def _exclusion(s, d):
  return s + d - 2.0 * s * d


def _d_exclusion(s, d):
  return 1.0 - 2.0 * d, 1.0 - 2.0 * s


def _linear_dodge(s, d):
  return jnp.minimum(1.0, s + d)


def _d_linear_dodge(s, d):
  slope = jnp.where(s + d < 1.0, 1.0, 0.0)
  return slope, slope


def _linear_burn(s, d):
  return jnp.maximum(0.0, s + d - 1.0)


def _d_linear_burn(s, d):
  slope = jnp.where(s + d > 1.0, 1.0, 0.0)
  return slope, slope


_BLEND_FUNCTIONS = {
    constants.BlendMode.NORMAL: BlendFunction(_normal, _d_normal),
    constants.BlendMode.MULTIPLY: BlendFunction(_multiply, _d_multiply),
    constants.BlendMode.SCREEN: BlendFunction(_screen, _d_screen),
    constants.BlendMode.OVERLAY: BlendFunction(_overlay, _d_overlay),
    constants.BlendMode.DARKEN: BlendFunction(_darken, _d_darken),
    constants.BlendMode.LIGHTEN: BlendFunction(_lighten, _d_lighten),
    constants.BlendMode.COLOR_DODGE: BlendFunction(_color_dodge,
                                                   _d_color_dodge),
    constants.BlendMode.COLOR_BURN: BlendFunction(_color_burn, _d_color_burn),
    constants.BlendMode.HARD_LIGHT: BlendFunction(_hard_light, _d_hard_light),
    constants.BlendMode.SOFT_LIGHT: BlendFunction(_soft_light, _d_soft_light),
    constants.BlendMode.DIFFERENCE: BlendFunction(_difference, _d_difference),
    constants.BlendMode.EXCLUSION: BlendFunction(_exclusion, _d_exclusion),
    constants.BlendMode.LINEAR_DODGE: BlendFunction(_linear_dodge,
                                                    _d_linear_dodge),
    constants.BlendMode.LINEAR_BURN: BlendFunction(_linear_burn,
                                                   _d_linear_burn),
}


def to_blend_mode(mode) -> constants.BlendMode:
  """Converts a BlendMode or its string value to a BlendMode."""
  try:
    return constants.BlendMode(mode)
  except ValueError:
    raise ValueError(f'Unsupported blend mode: {mode}') from None


def get_blend_function(mode) -> BlendFunction:
  """Returns the registered BlendFunction for a blend mode tag.

  Args:
    mode: a constants.BlendMode or its string value (e.g., 'multiply').

  Returns:
    The BlendFunction holding the value and derivative functions.

  Raises:
    ValueError: if no blend function is registered for the mode.
  """
  mode = to_blend_mode(mode)
  if mode not in _BLEND_FUNCTIONS:
    raise ValueError(f'Unsupported blend mode: {mode}')
  return _BLEND_FUNCTIONS[mode]


def registered_blend_modes():
  return list(_BLEND_FUNCTIONS.keys())
