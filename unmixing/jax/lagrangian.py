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

"""Augmented Lagrangian of the per-pixel unmixing problem."""

from typing import Any, Optional, Sequence, Tuple

from flax import struct
import jax.numpy as jnp
from unmixing.jax import constants
from unmixing.jax import equations
from unmixing.jax.internal import algebra
from unmixing.jax.internal import blend_modes
from unmixing.jax.internal import composite_ops


@struct.dataclass
class UnmixingProblem(object):
  """The unmixing problem of a single pixel.

  Holds everything that stays fixed while a solver iterates on the decision
  vector x: the observed color, the layer stack configuration, the color
  models and the energy settings. The problem is a pytree whose array members
  (target color, target alphas, color models) are leaves, so it can be passed
  through jax.jit; the stack configuration is static.

  Use UnmixingProblem.create() to build a validated instance.
  """
  target_color: jnp.ndarray
  color_models: Tuple[Any, ...]
  target_alphas: Optional[jnp.ndarray] = None

  comp_ops: Tuple[constants.CompositeOperator, ...] = struct.field(
      pytree_node=False, default=())
  modes: Tuple[constants.BlendMode, ...] = struct.field(
      pytree_node=False, default=())
  sigma: float = struct.field(
      pytree_node=False, default=constants.DEFAULT_SIGMA)
  use_sparsity: bool = struct.field(pytree_node=False, default=False)
  use_minimum_alpha: bool = struct.field(pytree_node=False, default=False)
  sparsity_weight: float = struct.field(
      pytree_node=False, default=constants.SPARSITY_WEIGHT)
  minimum_alpha: float = struct.field(
      pytree_node=False, default=constants.MINIMUM_ALPHA)
  minimum_alpha_weight: float = struct.field(
      pytree_node=False, default=constants.MINIMUM_ALPHA_WEIGHT)
  use_target_alphas: bool = struct.field(pytree_node=False, default=False)
  gray_layers: Tuple[int, ...] = struct.field(pytree_node=False, default=())

  @classmethod
  def create(cls,
             target_color,
             color_models,
             comp_ops: Sequence[Any],
             modes: Sequence[Any],
             sigma: float = constants.DEFAULT_SIGMA,
             use_sparsity: bool = False,
             use_minimum_alpha: bool = False,
             use_target_alphas: bool = False,
             target_alphas=None,
             gray_layers: Sequence[int] = (),
             sparsity_weight: float = constants.SPARSITY_WEIGHT,
             minimum_alpha: float = constants.MINIMUM_ALPHA,
             minimum_alpha_weight: float = constants.MINIMUM_ALPHA_WEIGHT):
    """Validates the stack configuration and builds an UnmixingProblem.

    Args:
      target_color: the [3] observed color.
      color_models: a ColorModel shared by all layers or a length N sequence of
        ColorModels (None disables the prior of a layer).
      comp_ops: a length N sequence of compositing operators.
      modes: a length N sequence of blend modes.
      sigma: scale of the color prior term.
      use_sparsity: whether the energy includes the sparsity term.
      use_minimum_alpha: whether the energy includes the minimum alpha term.
      use_target_alphas: whether the alphas are constrained to target_alphas.
      target_alphas: a [N] array, required if use_target_alphas is True.
      gray_layers: indices of layers constrained to be achromatic.
      sparsity_weight: weight of the sparsity term.
      minimum_alpha: alpha value below which the minimum alpha term is active.
      minimum_alpha_weight: weight of the minimum alpha term.

    Returns:
      An UnmixingProblem.

    Raises:
      ValueError: if the configuration is inconsistent or holds unknown tags.
    """
    algebra.resolve_stack(comp_ops, modes)
    comp_ops = tuple(composite_ops.to_composite_operator(op) for op in comp_ops)
    modes = tuple(blend_modes.to_blend_mode(mode) for mode in modes)
    num_layers = len(comp_ops)
    if num_layers < 1:
      raise ValueError('A layer stack must have at least one layer.')
    if sigma <= 0.0:
      raise ValueError(f'sigma must be positive, but is {sigma}')

    target_color, target_alphas, gray_layers = equations.check_targets(
        num_layers, jnp.asarray(target_color, dtype=float), use_target_alphas,
        target_alphas, gray_layers)
    if target_alphas is not None:
      target_alphas = jnp.asarray(target_alphas, dtype=float)

    return cls(
        target_color=target_color,
        color_models=equations.resolve_color_models(color_models, num_layers),
        target_alphas=target_alphas,
        comp_ops=comp_ops,
        modes=modes,
        sigma=float(sigma),
        use_sparsity=use_sparsity,
        use_minimum_alpha=use_minimum_alpha,
        sparsity_weight=float(sparsity_weight),
        minimum_alpha=float(minimum_alpha),
        minimum_alpha_weight=float(minimum_alpha_weight),
        use_target_alphas=use_target_alphas,
        gray_layers=gray_layers)

  @property
  def num_layers(self) -> int:
    return len(self.comp_ops)

  @property
  def num_variables(self) -> int:
    return 4 * self.num_layers

  @property
  def num_constraints(self) -> int:
    return equations.constraint_dimension(self.num_layers,
                                          self.use_target_alphas,
                                          self.gray_layers)

  def energy(self, x):
    return equations.calculate_unmixing_energy_term_packed(
        self._check_x(x), self.color_models, **self._energy_kwargs())

  def energy_gradient(self, x):
    return equations.calculate_derivative_of_unmixing_energy_packed(
        self._check_x(x), self.color_models, **self._energy_kwargs())

  def constraints(self, x):
    return equations.calculate_constraint_vector_packed(
        self._check_x(x), **self._constraint_kwargs())

  def constraint_jacobian(self, x):
    return equations.calculate_derivative_of_constraint_vector_packed(
        self._check_x(x), **self._constraint_kwargs())

  def objective(self, x, lambda_, rho):
    """Returns E(x) - lambda^T C(x) + rho / 2 |C(x)|^2."""
    constraint_vector = self.constraints(x)
    return (self.energy(x) +
            equations.calculate_lagrange_term(constraint_vector, lambda_) +
            equations.calculate_penalty_term(constraint_vector, rho))

  def objective_gradient(self, x, lambda_, rho):
    """Returns grad E(x) - J^T lambda + rho J^T C(x)."""
    return self.objective_and_gradient(x, lambda_, rho)[1]

  def objective_and_gradient(self, x, lambda_, rho):
    """Returns the objective and its gradient, sharing C(x) and J(x)."""
    constraint_vector = self.constraints(x)
    jacobian = self.constraint_jacobian(x)
    value = (self.energy(x) +
             equations.calculate_lagrange_term(constraint_vector, lambda_) +
             equations.calculate_penalty_term(constraint_vector, rho))
    gradient = (self.energy_gradient(x) - jacobian.T @ lambda_ +
                rho * (jacobian.T @ constraint_vector))
    return value, gradient

  def _check_x(self, x):
    x = jnp.asarray(x)
    if x.shape != (self.num_variables,):
      raise ValueError(
          f'x must have shape [{self.num_variables}] for {self.num_layers} '
          f'layers, but found {x.shape}')
    return x

  def _energy_kwargs(self):
    return dict(
        sigma=self.sigma,
        use_sparsity=self.use_sparsity,
        use_minimum_alpha=self.use_minimum_alpha,
        sparsity_weight=self.sparsity_weight,
        minimum_alpha=self.minimum_alpha,
        minimum_alpha_weight=self.minimum_alpha_weight)

  def _constraint_kwargs(self):
    return dict(
        target_color=self.target_color,
        comp_ops=self.comp_ops,
        modes=self.modes,
        use_target_alphas=self.use_target_alphas,
        target_alphas=self.target_alphas,
        gray_layers=self.gray_layers)
