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

"""Tests for the image decomposition."""

from absl.testing import absltest
from absl.testing import parameterized
import chex
import numpy as np
from unmixing.jax import color_model
from unmixing.jax import composite
from unmixing.jax import constants
from unmixing.jax import decompose
from unmixing.jax import optimize

_COMP_OPS = [constants.CompositeOperator.SOURCE_OVER] * 2
_MODES = [constants.BlendMode.NORMAL] * 2
_BOTTOM_COLOR = np.array([0.9, 0.9, 0.9])
_TOP_COLOR = np.array([0.8, 0.1, 0.1])


def _make_image():
  alphas = np.array([[0.2, 0.4], [0.6, 0.8]])[..., np.newaxis]
  return alphas * _TOP_COLOR + (1.0 - alphas) * _BOTTOM_COLOR


def _make_models():
  return [
      color_model.GaussianColorModel.create(_BOTTOM_COLOR, np.eye(3) * 0.01),
      color_model.GaussianColorModel.create(_TOP_COLOR, np.eye(3) * 0.01)
  ]


def _recomposite(layers):
  _, height, width, _ = layers.shape
  image = np.zeros([height, width, 3])
  for row in range(height):
    for col in range(width):
      pixel = layers[:, row, col]
      image[row, col], _ = composite.composite_layers(pixel[:, 3], pixel[:, :3],
                                                      _COMP_OPS, _MODES)
  return image


class DecomposeImageTest(chex.TestCase, parameterized.TestCase):

  @parameterized.named_parameters(
      ('single_pass', False, 1e-4),
      ('refined', True, 1e-3),
  )
  def test_recomposite_matches_image(self, refine_alphas, atol):
    image = _make_image()
    options = decompose.DecompositionOptions(
        use_sparsity=False, refine_alphas=refine_alphas)
    layers = decompose.decompose_image(image, _make_models(), _COMP_OPS,
                                       _MODES, options)

    self.assertEqual(layers.shape, (2, 2, 2, 4))
    np.testing.assert_allclose(_recomposite(layers), image, atol=atol)
    self.assertTrue(np.all(layers >= 0.0))
    self.assertTrue(np.all(layers <= 1.0))

  def test_shared_color_model(self):
    image = _make_image()
    options = decompose.DecompositionOptions(use_sparsity=False)
    layers = decompose.decompose_image(image, color_model.UniformColorModel(),
                                       ['source-over', 'source-over'],
                                       ['normal', 'normal'], options)

    np.testing.assert_allclose(_recomposite(layers), image, atol=1e-4)

  def test_gray_layer(self):
    options = decompose.DecompositionOptions(
        use_sparsity=False, gray_layers=(0,))
    layers = decompose.decompose_image(_make_image(), _make_models(),
                                       _COMP_OPS, _MODES, options)

    bottom = layers[0, ..., :3]
    np.testing.assert_allclose(bottom[..., 0], bottom[..., 1], atol=1e-4)
    np.testing.assert_allclose(bottom[..., 1], bottom[..., 2], atol=1e-4)

  def test_sparsity_keeps_alphas_in_bounds(self):
    options = decompose.DecompositionOptions(
        solver=optimize.SolverOptions(alpha_lower_bound=0.01))
    layers = decompose.decompose_image(_make_image()[:1], _make_models(),
                                       _COMP_OPS, _MODES, options)

    self.assertEqual(layers.shape, (2, 1, 2, 4))
    self.assertTrue(np.all(np.isfinite(layers)))
    self.assertTrue(np.all(layers[..., 3] >= 0.01))

  @parameterized.parameters(((4, 4),), ((2, 2, 4),), ((3,),))
  def test_invalid_image(self, shape):
    with self.assertRaisesRegex(ValueError, 'image must have shape'):
      decompose.decompose_image(
          np.zeros(shape), _make_models(), _COMP_OPS, _MODES)


if __name__ == '__main__':
  absltest.main()
