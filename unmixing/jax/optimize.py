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

"""Augmented Lagrangian solver for the per-pixel unmixing problem.

The solver minimizes E(x) subject to C(x) = 0 by repeatedly minimizing

  L(x) = E(x) - lambda^T C(x) + rho / 2 |C(x)|^2

over x in the unit box with L-BFGS-B, then updating the multipliers with
lambda <- lambda - rho C(x). The penalty rho grows whenever the constraint
violation did not shrink enough during an outer iteration.
"""

from typing import Optional

from absl import logging
from flax import struct
import jax
import jax.numpy as jnp
import numpy as np
import scipy.optimize
from unmixing.jax import lagrangian


@struct.dataclass
class SolverOptions(object):
  """Settings of the augmented Lagrangian iteration."""
  initial_rho: float = 10.0
  # rho is multiplied by rho_growth (up to max_rho) when |C| did not fall
  # below rho_decrease_ratio times its previous value.
  rho_growth: float = 10.0
  rho_decrease_ratio: float = 0.25
  max_rho: float = 1e8
  constraint_tolerance: float = 1e-6
  max_outer_iterations: int = 20
  max_inner_iterations: int = 500
  # Lower bound of the alphas during the solve. The composited color is
  # undefined when every layer alpha is zero.
  alpha_lower_bound: float = 1e-3
  use_jit: bool = True

  def validate(self):
    if not self.initial_rho > 0.0:
      raise ValueError(f'initial_rho must be > 0 but is {self.initial_rho}.')
    if not self.rho_growth >= 1.0:
      raise ValueError(f'rho_growth must be >= 1 but is {self.rho_growth}.')
    if not self.max_rho >= self.initial_rho:
      raise ValueError(
          f'max_rho must be >= initial_rho but is {self.max_rho}.')
    if not self.constraint_tolerance > 0.0:
      raise ValueError('constraint_tolerance must be > 0 but is '
                       f'{self.constraint_tolerance}.')
    if not self.max_outer_iterations >= 1:
      raise ValueError('max_outer_iterations must be >= 1 but is '
                       f'{self.max_outer_iterations}.')
    if not self.max_inner_iterations >= 1:
      raise ValueError('max_inner_iterations must be >= 1 but is '
                       f'{self.max_inner_iterations}.')
    if not 0.0 <= self.alpha_lower_bound < 1.0:
      raise ValueError('alpha_lower_bound must be in [0, 1) but is '
                       f'{self.alpha_lower_bound}.')


@struct.dataclass
class SolveResult(object):
  """Output of solve()."""
  # The [4N] decision vector.
  x: np.ndarray
  # The [N] layer alphas and [N, 3] layer colors stored in x.
  alphas: np.ndarray
  colors: np.ndarray
  # The norm of the constraint vector at x.
  constraint_norm: float
  converged: bool
  outer_iterations: int
  # The final multipliers and penalty coefficient, for warm starts.
  multipliers: np.ndarray
  rho: float


def _objective_and_gradient(problem, x, lambda_, rho):
  return problem.objective_and_gradient(x, lambda_, rho)


def _constraints(problem, x):
  return problem.constraints(x)


_jitted_objective_and_gradient = jax.jit(_objective_and_gradient)
_jitted_constraints = jax.jit(_constraints)


def initial_guess(problem: lagrangian.UnmixingProblem) -> np.ndarray:
  """Returns a starting decision vector for a problem.

  The bottom layer starts opaque and the other layers half transparent. Layer
  colors start at the mean of their color model, or at the target color for
  layers whose model has no mean.

  Args:
    problem: an UnmixingProblem.

  Returns:
    a [4N] float64 array.
  """
  alphas = np.full([problem.num_layers], 0.5)
  alphas[0] = 1.0
  target_color = np.asarray(problem.target_color, dtype=np.float64)
  colors = [
      np.asarray(getattr(model, 'mean', target_color), dtype=np.float64)
      for model in problem.color_models
  ]
  colors = np.clip(np.stack(colors, axis=0), 0.0, 1.0)
  return np.concatenate([alphas, colors.reshape(-1)])


def solve(problem: lagrangian.UnmixingProblem,
          x0: Optional[np.ndarray] = None,
          options: SolverOptions = SolverOptions(),
          multipliers: Optional[np.ndarray] = None) -> SolveResult:
  """Solves an unmixing problem with the augmented Lagrangian method.

  Args:
    problem: the UnmixingProblem to solve.
    x0: a [4N] starting point. Defaults to initial_guess(problem). Values are
      clipped to the solver bounds.
    options: SolverOptions.
    multipliers: optional starting multipliers with one entry per constraint.
      Defaults to zeros.

  Returns:
    A SolveResult. converged is False if the constraint tolerance was not
    reached within max_outer_iterations or the objective became non-finite.

  Raises:
    ValueError: if the options are invalid or x0 or multipliers have the wrong
      size.
  """
  options.validate()
  num_variables = problem.num_variables
  num_constraints = problem.num_constraints

  x = initial_guess(problem) if x0 is None else np.array(x0, dtype=np.float64)
  if x.shape != (num_variables,):
    raise ValueError(
        f'x0 must have shape [{num_variables}], but found {x.shape}')
  x = np.clip(x, 0.0, 1.0)
  x[:problem.num_layers] = np.maximum(x[:problem.num_layers],
                                      options.alpha_lower_bound)

  if multipliers is None:
    lambda_ = np.zeros([num_constraints])
  else:
    lambda_ = np.array(multipliers, dtype=np.float64)
    if lambda_.shape != (num_constraints,):
      raise ValueError(
          f'multipliers must have shape [{num_constraints}], but found '
          f'{lambda_.shape}')

  if options.use_jit:
    objective_and_gradient = _jitted_objective_and_gradient
    constraints = _jitted_constraints
  else:
    objective_and_gradient = _objective_and_gradient
    constraints = _constraints

  def fun(x_flat, lambda_, rho):
    value, gradient = objective_and_gradient(problem, jnp.asarray(x_flat),
                                             jnp.asarray(lambda_), rho)
    return float(value), np.asarray(gradient, dtype=np.float64)

  bounds = ([(options.alpha_lower_bound, 1.0)] * problem.num_layers +
            [(0.0, 1.0)] * (num_variables - problem.num_layers))
  rho = float(options.initial_rho)
  constraint_norm = np.linalg.norm(np.asarray(constraints(problem, x)))
  previous_norm = constraint_norm
  converged = False
  iteration = 0
  while iteration < options.max_outer_iterations:
    iteration += 1
    result = scipy.optimize.minimize(
        fun,
        x,
        args=(lambda_, rho),
        jac=True,
        method='L-BFGS-B',
        bounds=bounds,
        options={'maxiter': options.max_inner_iterations})
    if not np.isfinite(result.fun):
      logging.warning(
          'Non-finite objective at outer iteration %d; stopping the solve.',
          iteration)
      break
    x = result.x
    constraint_vector = np.asarray(constraints(problem, x))
    constraint_norm = np.linalg.norm(constraint_vector)
    logging.vlog(1, 'Outer iteration %d: objective %g, |C| %g, rho %g.',
                 iteration, result.fun, constraint_norm, rho)
    if constraint_norm < options.constraint_tolerance:
      converged = True
      break

    lambda_ = lambda_ - rho * constraint_vector
    if constraint_norm > options.rho_decrease_ratio * previous_norm:
      rho = min(rho * options.rho_growth, options.max_rho)
    previous_norm = constraint_norm

  if not converged:
    logging.warning(
        'Unmixing did not converge after %d outer iterations (|C| = %g).',
        iteration, constraint_norm)

  alphas = x[:problem.num_layers]
  colors = x[problem.num_layers:].reshape(problem.num_layers, 3)
  return SolveResult(
      x=x,
      alphas=alphas,
      colors=colors,
      constraint_norm=float(constraint_norm),
      converged=converged,
      outer_iterations=iteration,
      multipliers=lambda_,
      rho=rho)
