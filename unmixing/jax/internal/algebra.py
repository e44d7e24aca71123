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

"""Value and derivative of one (compositing operator, blend mode) pair."""

import functools
from typing import Callable, NamedTuple, Tuple

import jax.numpy as jnp
from unmixing.jax.internal import blend_modes
from unmixing.jax.internal import composite_ops


class CompositeFunction(NamedTuple):
  """Compositing of a source over a destination for a fixed operator and mode.

  value(c_s, c_d, a_s, a_d) returns the composited (color, alpha).
  derivative(c_s, c_d, a_s, a_d) returns ([4, 4], [4, 4]) Jacobians of the
  composited RGBA vector w.r.t. the source and destination RGBA vectors.
  """
  value: Callable[..., Tuple[jnp.ndarray, jnp.ndarray]]
  derivative: Callable[..., Tuple[jnp.ndarray, jnp.ndarray]]


def _make_composite_function(
    weights: composite_ops.OperatorWeights,
    blend: blend_modes.BlendFunction) -> CompositeFunction:
  """Builds the composite value and derivative functions."""
  x, y, z = weights.x, weights.y, weights.z

  def region_weights(a_s, a_d):
    return x * a_s * a_d, y * a_s * (1.0 - a_d), z * (1.0 - a_s) * a_d

  def overlap_color(c_s, c_d):
    return blend.value(c_s, c_d) if weights.blend_overlap else c_d

  def value(c_s, c_d, a_s, a_d):
    w_o, w_s, w_d = region_weights(a_s, a_d)
    alpha = w_o + w_s + w_d
    color = (w_o * overlap_color(c_s, c_d) + w_s * c_s + w_d * c_d) / alpha
    return color, alpha

  def derivative(c_s, c_d, a_s, a_d):
    w_o, w_s, w_d = region_weights(a_s, a_d)
    overlap = overlap_color(c_s, c_d)
    alpha = w_o + w_s + w_d
    color = (w_o * overlap + w_s * c_s + w_d * c_d) / alpha

    if weights.blend_overlap:
      d_overlap_s, d_overlap_d = blend.derivative(c_s, c_d)
    else:
      d_overlap_s, d_overlap_d = jnp.zeros_like(c_s), jnp.ones_like(c_d)

    d_alpha_s = x * a_d + y * (1.0 - a_d) - z * a_d
    d_alpha_d = x * a_s - y * a_s + z * (1.0 - a_s)

    # Derivatives of the premultiplied color w_o * O + w_s * c_s + w_d * c_d.
    # The blend modes are separable, so the color blocks are diagonal.
    d_premul_c_s = w_o * d_overlap_s + w_s
    d_premul_c_d = w_o * d_overlap_d + w_d
    d_premul_a_s = x * a_d * overlap + y * (1.0 - a_d) * c_s - z * a_d * c_d
    d_premul_a_d = x * a_s * overlap - y * a_s * c_s + z * (1.0 - a_s) * c_d

    def jacobian(d_premul_color, d_premul_alpha, d_alpha):
      # Quotient rule for color = premultiplied / alpha.
      d_color_alpha = (d_premul_alpha - color * d_alpha) / alpha
      return jnp.block([
          [jnp.diag(d_premul_color / alpha), d_color_alpha[:, jnp.newaxis]],
          [jnp.zeros((1, 3), dtype=color.dtype),
           jnp.reshape(d_alpha, (1, 1)).astype(color.dtype)],
      ])

    return (jacobian(d_premul_c_s, d_premul_a_s, d_alpha_s),
            jacobian(d_premul_c_d, d_premul_a_d, d_alpha_d))

  return CompositeFunction(value, derivative)


@functools.lru_cache(maxsize=None)
def _lookup(comp_op, mode) -> CompositeFunction:
  return _make_composite_function(
      composite_ops.get_operator_weights(comp_op),
      blend_modes.get_blend_function(mode))


def lookup(comp_op, mode) -> CompositeFunction:
  """Returns the CompositeFunction for a compositing operator and blend mode.

  Args:
    comp_op: a constants.CompositeOperator or its string value.
    mode: a constants.BlendMode or its string value.

  Returns:
    A CompositeFunction with value and derivative functions.

  Raises:
    ValueError: if either tag is not registered.
  """
  return _lookup(
      composite_ops.to_composite_operator(comp_op),
      blend_modes.to_blend_mode(mode))


def resolve_stack(comp_ops, modes) -> Tuple[CompositeFunction, ...]:
  """Resolves the CompositeFunction of every layer in a stack.

  Args:
    comp_ops: a length N sequence of compositing operators.
    modes: a length N sequence of blend modes.

  Returns:
    A length N tuple of CompositeFunctions. Entry 0 belongs to the bottom layer
    and is never applied.

  Raises:
    ValueError: if the sequences differ in length or hold an unknown tag.
  """
  if len(comp_ops) != len(modes):
    raise ValueError(
        f'Expected one blend mode per compositing operator, but found '
        f'{len(comp_ops)} operators and {len(modes)} blend modes.')
  return tuple(lookup(op, mode) for op, mode in zip(comp_ops, modes))
