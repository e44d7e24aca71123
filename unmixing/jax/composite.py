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

"""Compositing of layer stacks with blend modes and Porter-Duff operators."""

from typing import Sequence, Tuple

import jax.numpy as jnp
from unmixing.jax import constants
from unmixing.jax.internal import algebra


def composite_two_layers(
    color_s: jnp.ndarray,
    color_d: jnp.ndarray,
    alpha_s: float,
    alpha_d: float,
    comp_op=constants.CompositeOperator.SOURCE_OVER,
    mode=constants.BlendMode.NORMAL,
    crop: bool = False) -> Tuple[jnp.ndarray, jnp.ndarray]:
  """Composites a source layer onto a destination layer.

  Colors are not premultiplied. Non-finite results (e.g., when both alphas are
  zero) are returned as-is.

  Args:
    color_s: a [3] array with the source RGB color.
    color_d: a [3] array with the destination RGB color.
    alpha_s: the source alpha.
    alpha_d: the destination alpha.
    comp_op: a constants.CompositeOperator or its string value.
    mode: a constants.BlendMode or its string value.
    crop: if True, the result alpha is replaced by the destination alpha.

  Returns:
    a ([3] color, scalar alpha) tuple.

  Raises:
    ValueError: if a color does not have 3 components, an alpha is not a
      scalar or a tag is unknown.
  """
  color_s = _check_color(color_s, 'color_s')
  color_d = _check_color(color_d, 'color_d')
  alpha_s = _check_alpha(alpha_s, 'alpha_s')
  alpha_d = _check_alpha(alpha_d, 'alpha_d')
  composite_fn = algebra.lookup(comp_op, mode)
  color, alpha = composite_fn.value(color_s, color_d, alpha_s, alpha_d)
  if crop:
    alpha = jnp.asarray(alpha_d, dtype=color.dtype)
  return color, alpha


def composite_two_layers_packed(
    x_s: jnp.ndarray,
    x_d: jnp.ndarray,
    comp_op=constants.CompositeOperator.SOURCE_OVER,
    mode=constants.BlendMode.NORMAL,
    crop: bool = False) -> jnp.ndarray:
  """As composite_two_layers, but with [4] RGBA source and destination arrays.

  Returns:
    a [4] RGBA array.
  """
  x_s = _check_rgba(x_s, 'x_s')
  x_d = _check_rgba(x_d, 'x_d')
  color, alpha = composite_two_layers(x_s[:3], x_d[:3], x_s[3], x_d[3],
                                      comp_op, mode, crop)
  return jnp.append(color, alpha)


def composite_layers(alphas: jnp.ndarray,
                     colors: jnp.ndarray,
                     comp_ops: Sequence[constants.CompositeOperator],
                     modes: Sequence[constants.BlendMode],
                     crop: bool = False) -> Tuple[jnp.ndarray, jnp.ndarray]:
  """Composites a stack of layers from bottom to top.

  Layer 0 is the bottom-most layer. Starting from it, each following layer is
  composited as a source onto the running result using its own compositing
  operator and blend mode. The operator and mode of layer 0 are not used.

  Args:
    alphas: a [N] array of layer alphas.
    colors: a [3N] (or [N, 3]) array of layer RGB colors.
    comp_ops: a length N sequence of compositing operators.
    modes: a length N sequence of blend modes.
    crop: if True, the alpha of the final composite is replaced by the alpha
      of the stack below the top layer.

  Returns:
    a ([3] color, scalar alpha) tuple.

  Raises:
    ValueError: if the arguments have mismatched sizes or a tag is unknown.
  """
  alphas, colors = check_layers(alphas, colors)
  composite_fns = _resolve(comp_ops, modes, alphas.shape[0])

  color, alpha = colors[0], alphas[0]
  num_layers = alphas.shape[0]
  for i in range(1, num_layers):
    color, alpha_next = composite_fns[i].value(colors[i], color, alphas[i],
                                               alpha)
    alpha = alpha if crop and i == num_layers - 1 else alpha_next
  return color, alpha


def composite_layers_and_jacobian(
    alphas: jnp.ndarray,
    colors: jnp.ndarray,
    comp_ops: Sequence[constants.CompositeOperator],
    modes: Sequence[constants.BlendMode],
    crop: bool = False) -> Tuple[jnp.ndarray, jnp.ndarray]:
  """Composites a stack of layers and differentiates the result.

  The forward pass keeps the local Jacobians of every fold step. The backward
  pass then accumulates the derivative of the final RGBA composite w.r.t. every
  layer, from the top of the stack down.

  Args:
    alphas: a [N] array of layer alphas.
    colors: a [3N] (or [N, 3]) array of layer RGB colors.
    comp_ops: a length N sequence of compositing operators.
    modes: a length N sequence of blend modes.
    crop: as in composite_layers.

  Returns:
    a [4] RGBA composite and its [4, 4N] Jacobian w.r.t. the decision vector
    [alphas, colors].
  """
  alphas, colors = check_layers(alphas, colors)
  num_layers = alphas.shape[0]
  composite_fns = _resolve(comp_ops, modes, num_layers)

  color, alpha = colors[0], alphas[0]
  source_jacobians = []
  destination_jacobians = []
  for i in range(1, num_layers):
    composite_fn = composite_fns[i]
    jac_s, jac_d = composite_fn.derivative(colors[i], color, alphas[i], alpha)
    color, alpha_next = composite_fn.value(colors[i], color, alphas[i], alpha)
    if crop and i == num_layers - 1:
      jac_s = jac_s.at[3, :].set(0.0)
      jac_d = jac_d.at[3, :].set(jnp.array([0.0, 0.0, 0.0, 1.0]))
    else:
      alpha = alpha_next
    source_jacobians.append(jac_s)
    destination_jacobians.append(jac_d)

  # Backward pass. upstream holds d(output) / d(running result after step i).
  layer_jacobians = [None] * num_layers
  upstream = jnp.eye(4, dtype=colors.dtype)
  for i in range(num_layers - 1, 0, -1):
    layer_jacobians[i] = upstream @ source_jacobians[i - 1]
    upstream = upstream @ destination_jacobians[i - 1]
  layer_jacobians[0] = upstream

  jacobian = jnp.zeros((4, 4 * num_layers), dtype=colors.dtype)
  for i, layer_jacobian in enumerate(layer_jacobians):
    jacobian = jacobian.at[:, i].set(layer_jacobian[:, 3])
    color_columns = num_layers + 3 * i
    jacobian = jacobian.at[:, color_columns:color_columns + 3].set(
        layer_jacobian[:, :3])
  return jnp.append(color, alpha), jacobian


def check_layers(alphas, colors) -> Tuple[jnp.ndarray, jnp.ndarray]:
  """Validates layer alphas and colors, returning [N] and [N, 3] arrays."""
  alphas = jnp.asarray(alphas)
  colors = jnp.asarray(colors)
  if alphas.ndim != 1 or alphas.shape[0] < 1:
    raise ValueError(
        f'alphas must have shape [N] with N >= 1, but found {alphas.shape}')
  num_layers = alphas.shape[0]
  if colors.shape not in ((3 * num_layers,), (num_layers, 3)):
    raise ValueError(
        f'colors must have shape [{3 * num_layers}] or [{num_layers}, 3] for '
        f'{num_layers} layers, but found {colors.shape}')
  dtype = jnp.result_type(alphas.dtype, colors.dtype, float)
  return alphas.astype(dtype), jnp.reshape(colors, (num_layers, 3)).astype(
      dtype)


def _resolve(comp_ops, modes, num_layers):
  if len(comp_ops) != num_layers or len(modes) != num_layers:
    raise ValueError(
        f'Expected {num_layers} compositing operators and blend modes, but '
        f'found {len(comp_ops)} and {len(modes)}')
  return algebra.resolve_stack(comp_ops, modes)


def _check_color(color, name):
  color = jnp.asarray(color)
  if color.shape != (3,):
    raise ValueError(f'{name} must have shape [3], but found {color.shape}')
  return color


def _check_alpha(alpha, name):
  alpha = jnp.asarray(alpha)
  if alpha.ndim != 0:
    raise ValueError(f'{name} must be a scalar, but found shape {alpha.shape}')
  return alpha


def _check_rgba(x, name):
  x = jnp.asarray(x)
  if x.shape != (4,):
    raise ValueError(f'{name} must have shape [4], but found {x.shape}')
  return x
