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

"""Tests for the unmixing energy and constraint equations."""

from absl.testing import absltest
from absl.testing import parameterized
import chex
import jax.numpy as jnp
import numpy as np
from unmixing.common import test_utils
from unmixing.jax import color_model
from unmixing.jax import composite
from unmixing.jax import constants
from unmixing.jax import equations

_OVER = constants.CompositeOperator.SOURCE_OVER
_NORMAL = constants.BlendMode.NORMAL


def _make_models(num_layers, seed=0):
  rng = np.random.default_rng(seed)
  models = []
  for _ in range(num_layers):
    mean = rng.uniform(0.2, 0.8, size=[3])
    scale = rng.uniform(0.05, 0.2, size=[3, 3])
    covariance = scale @ scale.T + 0.01 * np.eye(3)
    models.append(color_model.GaussianColorModel.create(mean, covariance))
  return models


class EnergyTest(chex.TestCase, parameterized.TestCase):

  @parameterized.named_parameters(
      ('prior_only', False, False),
      ('sparsity', True, False),
      ('minimum_alpha', False, True),
      ('all_terms', True, True),
  )
  def test_gradient_matches_finite_differences(self, use_sparsity,
                                               use_minimum_alpha):
    num_layers = 3
    models = _make_models(num_layers)
    for seed in range(3):
      x = test_utils.random_decision_vector(
          num_layers, seed=seed, min_alpha=0.0, max_alpha=1.0)
      kwargs = dict(
          sigma=0.5,
          use_sparsity=use_sparsity,
          use_minimum_alpha=use_minimum_alpha,
          minimum_alpha=0.3)

      gradient = equations.calculate_derivative_of_unmixing_energy_packed(
          x, models, **kwargs)
      expected = test_utils.numerical_gradient(
          lambda x: equations.calculate_unmixing_energy_term_packed(  # pylint: disable=g-long-lambda
              x, models, **kwargs), x)
      self.assertEqual(gradient.shape, (4 * num_layers,))
      np.testing.assert_allclose(gradient, expected, rtol=1e-5, atol=1e-6)

  def test_prior_term_value(self):
    model = color_model.GaussianColorModel.create(
        mean=[0.5, 0.5, 0.5], covariance=np.eye(3) * 0.01)
    colors = jnp.array([[0.6, 0.5, 0.5], [0.5, 0.5, 0.5]])
    energy = equations.calculate_unmixing_energy_term(
        jnp.array([1.0, 0.5]), colors, model, sigma=0.5)
    # Cost of the first layer is 1, scaled by 1 / (2 * 0.5^2).
    self.assertAlmostEqual(float(energy), 2.0)

  def test_regularizer_values(self):
    alphas = jnp.array([1.0, 0.02, 0.5])
    colors = jnp.zeros([3, 3])
    energy = equations.calculate_unmixing_energy_term(
        alphas,
        colors,
        color_model.UniformColorModel(),
        use_sparsity=True,
        use_minimum_alpha=True,
        sparsity_weight=2.0,
        minimum_alpha=0.1,
        minimum_alpha_weight=100.0)
    self.assertAlmostEqual(float(energy), 2.0 * 1.52 + 100.0 * 0.08**2)

  def test_regularizers_only_touch_alphas(self):
    x = test_utils.random_decision_vector(2)
    gradient = equations.calculate_derivative_of_unmixing_energy_packed(
        x, [None, None], use_sparsity=True, use_minimum_alpha=True)
    np.testing.assert_array_equal(gradient[2:], np.zeros(6))
    np.testing.assert_allclose(gradient[:2], [constants.SPARSITY_WEIGHT] * 2)

  def test_layers_without_model_are_inactive(self):
    models = _make_models(2)
    alphas, colors = test_utils.random_layers(2)
    energy = equations.calculate_unmixing_energy_term(alphas, colors,
                                                      [models[0], None])
    expected = models[0].cost(colors[0]) / (2 * constants.DEFAULT_SIGMA**2)
    self.assertAlmostEqual(float(energy), float(expected))
    gradient = equations.calculate_derivative_of_unmixing_energy(
        alphas, colors, [models[0], None])
    np.testing.assert_array_equal(gradient[5:], np.zeros(3))

  def test_shared_model_without_color_model_base(self):

    class SquaredNormModel(object):

      def cost(self, color):
        return jnp.sum(jnp.asarray(color)**2)

      def gradient(self, color):
        return 2.0 * jnp.asarray(color)

    colors = jnp.array([[0.1, 0.2, 0.2], [0.3, 0.0, 0.4]])
    alphas = jnp.array([1.0, 0.5])
    energy = equations.calculate_unmixing_energy_term(
        alphas, colors, SquaredNormModel(), sigma=0.5)
    # Costs 0.09 and 0.25, scaled by 1 / (2 * 0.5^2).
    self.assertAlmostEqual(float(energy), 2.0 * 0.34)
    gradient = equations.calculate_derivative_of_unmixing_energy(
        alphas, colors, SquaredNormModel(), sigma=0.5)
    np.testing.assert_allclose(gradient[2:], 4.0 * colors.reshape(-1))

  def test_invalid_arguments(self):
    alphas, colors = test_utils.random_layers(2)
    with self.assertRaisesRegex(ValueError, 'Expected 2 color models'):
      equations.calculate_unmixing_energy_term(alphas, colors,
                                               _make_models(3))
    with self.assertRaisesRegex(ValueError, 'sigma must be positive'):
      equations.calculate_unmixing_energy_term(alphas, colors, None, sigma=0.0)
    with self.assertRaisesRegex(ValueError, 'x must have shape'):
      equations.calculate_unmixing_energy_term_packed(np.zeros(7), None)


class ConstraintTest(chex.TestCase, parameterized.TestCase):

  @parameterized.named_parameters(
      ('color_only', False, ()),
      ('target_alphas', True, ()),
      ('gray_layers', False, (0, 2)),
      ('all_blocks', True, (1,)),
  )
  def test_round_trip_is_zero(self, use_target_alphas, gray_layers):
    alphas, colors = test_utils.random_layers(3, seed=2)
    for layer in gray_layers:
      colors[layer, :] = colors[layer, 0]
    comp_ops = [_OVER, _OVER, constants.CompositeOperator.SOURCE_ATOP]
    modes = [_NORMAL, constants.BlendMode.MULTIPLY, constants.BlendMode.SCREEN]
    target_color, _ = composite.composite_layers(alphas, colors, comp_ops,
                                                 modes)

    constraint_vector = equations.calculate_constraint_vector(
        alphas, colors, target_color, comp_ops, modes, use_target_alphas,
        alphas, gray_layers)
    expected_size = equations.constraint_dimension(3, use_target_alphas,
                                                   gray_layers)
    self.assertEqual(constraint_vector.shape, (expected_size,))
    np.testing.assert_array_equal(constraint_vector, np.zeros(expected_size))

  def test_block_layout(self):
    alphas = jnp.array([1.0, 0.5])
    colors = jnp.array([[0.0, 0.0, 0.0], [1.0, 0.5, 0.25]])
    constraint_vector = equations.calculate_constraint_vector(
        alphas,
        colors, [0.1, 0.1, 0.1], [_OVER] * 2, [_NORMAL] * 2,
        use_target_alphas=True,
        target_alphas=[0.75, 0.75],
        gray_layers=[1])
    np.testing.assert_allclose(
        constraint_vector,
        [0.4, 0.15, 0.025, 0.25, -0.25, 0.5, 0.25],
        atol=1e-12)

  @parameterized.named_parameters(
      ('over_normal', [_OVER] * 3, [_NORMAL] * 3, False, ()),
      ('mixed_modes', [_OVER] * 3, [
          _NORMAL, constants.BlendMode.OVERLAY, constants.BlendMode.COLOR_BURN
      ], True, (0,)),
      ('mixed_operators', [
          _OVER, constants.CompositeOperator.SOURCE_ATOP,
          constants.CompositeOperator.DESTINATION_OVER
      ], [
          _NORMAL, constants.BlendMode.EXCLUSION,
          constants.BlendMode.SOFT_LIGHT
      ], True, (2, 1)),
  )
  def test_jacobian_matches_finite_differences(self, comp_ops, modes,
                                               use_target_alphas,
                                               gray_layers):
    num_layers = 3
    target_color = jnp.array([0.3, 0.5, 0.4])
    target_alphas = jnp.array([1.0, 0.5, 0.25])
    args = (target_color, comp_ops, modes, use_target_alphas, target_alphas,
            gray_layers)
    for seed in range(3):
      x = test_utils.random_decision_vector(num_layers, seed=seed)
      jacobian = equations.calculate_derivative_of_constraint_vector_packed(
          x, *args)
      expected = test_utils.numerical_jacobian(
          lambda x: equations.calculate_constraint_vector_packed(x, *args), x)
      self.assertEqual(
          jacobian.shape,
          (equations.constraint_dimension(num_layers, use_target_alphas,
                                          gray_layers), 4 * num_layers))
      np.testing.assert_allclose(jacobian, expected, rtol=1e-5, atol=1e-7)

  def test_gray_layer(self):
    alphas = jnp.array([1.0, 0.5, 0.5])
    colors = np.array([[0.9, 0.9, 0.9], [0.2, 0.5, 0.8], [0.1, 0.7, 0.3]])
    args = ([0.5, 0.5, 0.5], [_OVER] * 3, [_NORMAL] * 3, False, None, [1])

    constraint_vector = equations.calculate_constraint_vector(
        alphas, colors, *args)
    np.testing.assert_allclose(constraint_vector[3:], [-0.3, -0.3])

    colors[1] = [0.5, 0.5, 0.5]
    constraint_vector = equations.calculate_constraint_vector(
        alphas, colors, *args)
    np.testing.assert_array_equal(constraint_vector[3:], [0.0, 0.0])

  def test_invalid_targets(self):
    alphas, colors = test_utils.random_layers(2)
    stack = ([_OVER] * 2, [_NORMAL] * 2)
    with self.assertRaisesRegex(ValueError, 'target_alphas are required'):
      equations.calculate_constraint_vector(alphas, colors, [0.5] * 3, *stack,
                                            use_target_alphas=True)
    with self.assertRaisesRegex(ValueError, 'target_alphas must have shape'):
      equations.calculate_constraint_vector(
          alphas, colors, [0.5] * 3, *stack, use_target_alphas=True,
          target_alphas=[0.5] * 3)
    with self.assertRaisesRegex(ValueError, 'target_color must have shape'):
      equations.calculate_derivative_of_constraint_vector(
          alphas, colors, [0.5] * 4, *stack)
    with self.assertRaisesRegex(ValueError, 'Gray layer index 2'):
      equations.calculate_constraint_vector(
          alphas, colors, [0.5] * 3, *stack, gray_layers=[2])
    with self.assertRaisesRegex(ValueError, 'Unsupported blend mode'):
      equations.calculate_constraint_vector(alphas, colors, [0.5] * 3,
                                            [_OVER] * 2, [_NORMAL, 'glow'])


class LagrangianTermsTest(chex.TestCase):

  def test_lagrange_term(self):
    value = equations.calculate_lagrange_term(
        jnp.array([1.0, -2.0, 0.5]), jnp.array([2.0, 1.0, 4.0]))
    self.assertAlmostEqual(float(value), -2.0)

  def test_penalty_term(self):
    value = equations.calculate_penalty_term(jnp.array([1.0, -2.0, 0.5]), 4.0)
    self.assertAlmostEqual(float(value), 2.0 * 5.25)

  def test_lambda_dimension_mismatch(self):
    with self.assertRaisesRegex(ValueError, 'lambda must have the shape'):
      equations.calculate_lagrange_term(jnp.zeros([3]), jnp.zeros([5]))


if __name__ == '__main__':
  absltest.main()
