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

"""Energy, constraints and their derivatives for per-pixel layer unmixing.

A decomposition of a pixel into N layers is described by the decision vector

  x = [a_0, ..., a_{N-1}, r_0, g_0, b_0, ..., r_{N-1}, g_{N-1}, b_{N-1}]

holding all layer alphas followed by all layer colors, bottom layer first.
The unmixing problem minimizes the energy E(x) subject to C(x) = 0, where C
ties the composited stack to the observed color. The functions below evaluate
E, C and their analytic derivatives, along with the multiplier and penalty
terms of the augmented Lagrangian E(x) - lambda^T C(x) + rho / 2 |C(x)|^2.
"""

from typing import Optional, Sequence, Tuple

import jax.numpy as jnp
from unmixing.jax import color_model as cm
from unmixing.jax import composite
from unmixing.jax import constants


def split_decision_vector(x: jnp.ndarray) -> Tuple[jnp.ndarray, jnp.ndarray]:
  """Splits a [4N] decision vector into [N] alphas and [N, 3] colors."""
  x = jnp.asarray(x)
  if x.ndim != 1 or x.shape[0] < 4 or x.shape[0] % 4 != 0:
    raise ValueError(
        f'x must have shape [4N] with N >= 1, but found {x.shape}')
  num_layers = x.shape[0] // 4
  return x[:num_layers], jnp.reshape(x[num_layers:], (num_layers, 3))


def concatenate_decision_vector(alphas, colors) -> jnp.ndarray:
  """Packs layer alphas and colors into a [4N] decision vector."""
  alphas, colors = composite.check_layers(alphas, colors)
  return jnp.concatenate([alphas, jnp.reshape(colors, (-1,))])


def constraint_dimension(num_layers: int,
                         use_target_alphas: bool,
                         gray_layers: Sequence[int] = ()) -> int:
  return 3 + (num_layers if use_target_alphas else 0) + 2 * len(gray_layers)


def calculate_unmixing_energy_term(
    alphas: jnp.ndarray,
    colors: jnp.ndarray,
    color_models,
    sigma: float = constants.DEFAULT_SIGMA,
    use_sparsity: bool = False,
    use_minimum_alpha: bool = False,
    sparsity_weight: float = constants.SPARSITY_WEIGHT,
    minimum_alpha: float = constants.MINIMUM_ALPHA,
    minimum_alpha_weight: float = constants.MINIMUM_ALPHA_WEIGHT
) -> jnp.ndarray:
  """Computes the unmixing energy E(x).

  E(x) = sum_i cost_i(c_i) / (2 sigma^2)
         + sparsity_weight * sum_i a_i
         + minimum_alpha_weight * sum_i max(0, minimum_alpha - a_i)^2

  where the second and third terms are only present if use_sparsity and
  use_minimum_alpha are set, respectively.

  The prior sum runs over the layers that have a color model.

  Args:
    alphas: a [N] array of layer alphas.
    colors: a [3N] (or [N, 3]) array of layer colors.
    color_models: a ColorModel shared by all layers, or a length N sequence of
      ColorModels. None entries disable the prior for that layer.
    sigma: scale of the color prior term. Must be positive.
    use_sparsity: whether to add the sparsity term.
    use_minimum_alpha: whether to add the minimum alpha term.
    sparsity_weight: weight of the sparsity term.
    minimum_alpha: alpha value below which the minimum alpha term is active.
    minimum_alpha_weight: weight of the minimum alpha term.

  Returns:
    The scalar energy.

  Raises:
    ValueError: if the arguments have mismatched sizes or sigma is not
      positive.
  """
  alphas, colors = composite.check_layers(alphas, colors)
  models = resolve_color_models(color_models, alphas.shape[0])
  prior_scale = _prior_scale(sigma)

  energy = jnp.zeros((), dtype=alphas.dtype)
  for model, color in zip(models, colors):
    if model is not None:
      energy = energy + prior_scale * model.cost(color)
  if use_sparsity:
    energy = energy + sparsity_weight * jnp.sum(alphas)
  if use_minimum_alpha:
    shortfall = jnp.maximum(minimum_alpha - alphas, 0.0)
    energy = energy + minimum_alpha_weight * jnp.sum(shortfall**2)
  return energy


def calculate_unmixing_energy_term_packed(x: jnp.ndarray, color_models,
                                          *args, **kwargs) -> jnp.ndarray:
  """As calculate_unmixing_energy_term, for a [4N] decision vector."""
  alphas, colors = split_decision_vector(x)
  return calculate_unmixing_energy_term(alphas, colors, color_models, *args,
                                        **kwargs)


def calculate_derivative_of_unmixing_energy(
    alphas: jnp.ndarray,
    colors: jnp.ndarray,
    color_models,
    sigma: float = constants.DEFAULT_SIGMA,
    use_sparsity: bool = False,
    use_minimum_alpha: bool = False,
    sparsity_weight: float = constants.SPARSITY_WEIGHT,
    minimum_alpha: float = constants.MINIMUM_ALPHA,
    minimum_alpha_weight: float = constants.MINIMUM_ALPHA_WEIGHT
) -> jnp.ndarray:
  """Computes the [4N] gradient of calculate_unmixing_energy_term w.r.t. x.

  Takes the same arguments as calculate_unmixing_energy_term. The prior term
  only contributes to the color entries and the regularizers only contribute
  to the alpha entries.
  """
  alphas, colors = composite.check_layers(alphas, colors)
  models = resolve_color_models(color_models, alphas.shape[0])
  prior_scale = _prior_scale(sigma)

  d_alphas = jnp.zeros_like(alphas)
  if use_sparsity:
    d_alphas = d_alphas + sparsity_weight
  if use_minimum_alpha:
    shortfall = jnp.maximum(minimum_alpha - alphas, 0.0)
    d_alphas = d_alphas - 2.0 * minimum_alpha_weight * shortfall

  d_colors = [
      jnp.zeros_like(color) if model is None else prior_scale *
      model.gradient(color) for model, color in zip(models, colors)
  ]
  return jnp.concatenate([d_alphas] + d_colors)


def calculate_derivative_of_unmixing_energy_packed(x: jnp.ndarray,
                                                   color_models, *args,
                                                   **kwargs) -> jnp.ndarray:
  """As calculate_derivative_of_unmixing_energy, for a decision vector."""
  alphas, colors = split_decision_vector(x)
  return calculate_derivative_of_unmixing_energy(alphas, colors, color_models,
                                                 *args, **kwargs)


def calculate_constraint_vector(
    alphas: jnp.ndarray,
    colors: jnp.ndarray,
    target_color: jnp.ndarray,
    comp_ops: Sequence[constants.CompositeOperator],
    modes: Sequence[constants.BlendMode],
    use_target_alphas: bool = False,
    target_alphas: Optional[jnp.ndarray] = None,
    gray_layers: Sequence[int] = ()) -> jnp.ndarray:
  """Computes the equality constraint vector C(x).

  C(x) concatenates, in order:
    * the composited color minus target_color (3 entries);
    * a_i - target_alphas[i] for every layer, if use_target_alphas is True
      (N entries);
    * (r_g - g_g, g_g - b_g) for every gray layer g (2 entries each).

  Args:
    alphas: a [N] array of layer alphas.
    colors: a [3N] (or [N, 3]) array of layer colors.
    target_color: the [3] observed color.
    comp_ops: a length N sequence of compositing operators.
    modes: a length N sequence of blend modes.
    use_target_alphas: whether to constrain the alphas to target_alphas.
    target_alphas: a [N] array. Required if use_target_alphas is True.
    gray_layers: indices of layers constrained to be achromatic.

  Returns:
    The constraint vector with constraint_dimension(N, ...) entries.

  Raises:
    ValueError: if the arguments have mismatched sizes or a tag is unknown.
  """
  alphas, colors = composite.check_layers(alphas, colors)
  target_color, target_alphas, gray_layers = check_targets(
      alphas.shape[0], target_color, use_target_alphas, target_alphas,
      gray_layers)

  color, _ = composite.composite_layers(alphas, colors, comp_ops, modes)
  blocks = [color - target_color]
  if use_target_alphas:
    blocks.append(alphas - target_alphas)
  for layer in gray_layers:
    blocks.append(colors[layer, :2] - colors[layer, 1:])
  return jnp.concatenate(blocks)


def calculate_constraint_vector_packed(x: jnp.ndarray, *args,
                                       **kwargs) -> jnp.ndarray:
  """As calculate_constraint_vector, for a [4N] decision vector."""
  alphas, colors = split_decision_vector(x)
  return calculate_constraint_vector(alphas, colors, *args, **kwargs)


def calculate_derivative_of_constraint_vector(
    alphas: jnp.ndarray,
    colors: jnp.ndarray,
    target_color: jnp.ndarray,
    comp_ops: Sequence[constants.CompositeOperator],
    modes: Sequence[constants.BlendMode],
    use_target_alphas: bool = False,
    target_alphas: Optional[jnp.ndarray] = None,
    gray_layers: Sequence[int] = ()) -> jnp.ndarray:
  """Computes the Jacobian of calculate_constraint_vector w.r.t. x.

  Takes the same arguments as calculate_constraint_vector.

  Returns:
    A [constraint_dimension(N, ...), 4N] matrix.
  """
  alphas, colors = composite.check_layers(alphas, colors)
  num_layers = alphas.shape[0]
  _, _, gray_layers = check_targets(num_layers, target_color,
                                     use_target_alphas, target_alphas,
                                     gray_layers)

  _, stack_jacobian = composite.composite_layers_and_jacobian(
      alphas, colors, comp_ops, modes)
  blocks = [stack_jacobian[:3, :]]
  if use_target_alphas:
    blocks.append(
        jnp.eye(num_layers, 4 * num_layers, dtype=stack_jacobian.dtype))
  for layer in gray_layers:
    gray_block = jnp.zeros((2, 4 * num_layers), dtype=stack_jacobian.dtype)
    column = num_layers + 3 * layer
    gray_block = gray_block.at[0, column].set(1.0)
    gray_block = gray_block.at[0, column + 1].set(-1.0)
    gray_block = gray_block.at[1, column + 1].set(1.0)
    gray_block = gray_block.at[1, column + 2].set(-1.0)
    blocks.append(gray_block)
  return jnp.concatenate(blocks, axis=0)


def calculate_derivative_of_constraint_vector_packed(x: jnp.ndarray, *args,
                                                     **kwargs) -> jnp.ndarray:
  """As calculate_derivative_of_constraint_vector, for a decision vector."""
  alphas, colors = split_decision_vector(x)
  return calculate_derivative_of_constraint_vector(alphas, colors, *args,
                                                   **kwargs)


def calculate_lagrange_term(constraint_vector: jnp.ndarray,
                            lambda_: jnp.ndarray) -> jnp.ndarray:
  """Computes the multiplier term -lambda^T C(x)."""
  constraint_vector = jnp.asarray(constraint_vector)
  lambda_ = jnp.asarray(lambda_)
  if lambda_.shape != constraint_vector.shape:
    raise ValueError(
        f'lambda must have the shape of the constraint vector '
        f'{constraint_vector.shape}, but found {lambda_.shape}')
  return -jnp.dot(lambda_, constraint_vector)


def calculate_penalty_term(constraint_vector: jnp.ndarray,
                           rho: float) -> jnp.ndarray:
  """Computes the penalty term rho / 2 |C(x)|^2."""
  constraint_vector = jnp.asarray(constraint_vector)
  return 0.5 * rho * jnp.dot(constraint_vector, constraint_vector)


def _prior_scale(sigma):
  if isinstance(sigma, (int, float)) and sigma <= 0.0:
    raise ValueError(f'sigma must be positive, but is {sigma}')
  return 1.0 / (2.0 * sigma * sigma)


def resolve_color_models(color_models, num_layers):
  """Returns a length num_layers tuple of color models (or None).

  A single model is shared by all layers. Any object with callable cost() and
  gradient() methods is a model, whether or not it subclasses ColorModel.
  """
  if color_models is None or _is_color_model(color_models):
    return (color_models,) * num_layers
  color_models = tuple(color_models)
  if len(color_models) != num_layers:
    raise ValueError(
        f'Expected {num_layers} color models, but found {len(color_models)}')
  return color_models


def _is_color_model(obj):
  if isinstance(obj, cm.ColorModel):
    return True
  return (callable(getattr(obj, 'cost', None)) and
          callable(getattr(obj, 'gradient', None)))


def check_targets(num_layers, target_color, use_target_alphas, target_alphas,
                   gray_layers):
  """Validates the constraint targets."""
  target_color = jnp.asarray(target_color)
  if target_color.shape != (3,):
    raise ValueError(
        f'target_color must have shape [3], but found {target_color.shape}')
  if use_target_alphas:
    if target_alphas is None:
      raise ValueError('target_alphas are required when use_target_alphas is '
                       'True.')
    target_alphas = jnp.asarray(target_alphas)
    if target_alphas.shape != (num_layers,):
      raise ValueError(
          f'target_alphas must have shape [{num_layers}], but found '
          f'{target_alphas.shape}')
  gray_layers = tuple(int(layer) for layer in gray_layers)
  for layer in gray_layers:
    if not 0 <= layer < num_layers:
      raise ValueError(
          f'Gray layer index {layer} is out of range for {num_layers} layers.')
  return target_color, target_alphas, gray_layers
