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

"""Decomposition of an image into layers, one pixel at a time."""

from typing import Sequence, Tuple

from absl import logging
from flax import struct
import numpy as np
from scipy import ndimage
from unmixing.jax import constants
from unmixing.jax import lagrangian
from unmixing.jax import optimize


@struct.dataclass
class DecompositionOptions(object):
  """Settings shared by all pixels of an image decomposition."""
  sigma: float = constants.DEFAULT_SIGMA
  use_sparsity: bool = True
  use_minimum_alpha: bool = False
  gray_layers: Tuple[int, ...] = ()
  # If True, the alphas of the first pass are smoothed with a 3x3 box filter
  # and every pixel is solved again with its alphas constrained to them.
  refine_alphas: bool = False
  solver: optimize.SolverOptions = struct.field(
      default_factory=optimize.SolverOptions)


def decompose_image(
    image: np.ndarray,
    color_models,
    comp_ops: Sequence[constants.CompositeOperator],
    modes: Sequence[constants.BlendMode],
    options: DecompositionOptions = DecompositionOptions()
) -> np.ndarray:
  """Decomposes an RGB image into a stack of RGBA layers.

  Every pixel is unmixed independently with the same layer stack and color
  models. Pixels are processed sequentially.

  Args:
    image: a [height, width, 3] array of RGB colors in [0, 1].
    color_models: a ColorModel shared by all layers or a length N sequence of
      ColorModels.
    comp_ops: a length N sequence of compositing operators.
    modes: a length N sequence of blend modes.
    options: DecompositionOptions.

  Returns:
    a [N, height, width, 4] array of RGBA layers, bottom layer first. Colors
    are not premultiplied.

  Raises:
    ValueError: if the image does not have shape [height, width, 3] or the
      layer configuration is invalid.
  """
  image = np.asarray(image, dtype=np.float64)
  if image.ndim != 3 or image.shape[-1] != 3:
    raise ValueError(
        f'image must have shape [height, width, 3], but found {image.shape}')
  height, width = image.shape[:2]
  num_layers = len(comp_ops)

  def make_problem(color, target_alphas=None):
    return lagrangian.UnmixingProblem.create(
        target_color=color,
        color_models=color_models,
        comp_ops=comp_ops,
        modes=modes,
        sigma=options.sigma,
        use_sparsity=options.use_sparsity,
        use_minimum_alpha=options.use_minimum_alpha,
        use_target_alphas=target_alphas is not None,
        target_alphas=target_alphas,
        gray_layers=options.gray_layers)

  solutions = np.zeros([height, width, 4 * num_layers])
  unconverged = 0
  logging.info('Unmixing a %dx%d image into %d layers.', width, height,
               num_layers)
  for row in range(height):
    for col in range(width):
      result = optimize.solve(
          make_problem(image[row, col]), options=options.solver)
      solutions[row, col] = result.x
      unconverged += int(not result.converged)

  if options.refine_alphas:
    alphas = np.moveaxis(solutions[..., :num_layers], -1, 0)
    target_alphas = ndimage.uniform_filter(
        alphas, size=(1, 3, 3), mode='nearest')
    logging.info('Refining the layers with smoothed alphas.')
    unconverged = 0
    for row in range(height):
      for col in range(width):
        result = optimize.solve(
            make_problem(image[row, col], target_alphas[:, row, col]),
            x0=solutions[row, col],
            options=options.solver)
        solutions[row, col] = result.x
        unconverged += int(not result.converged)

  if unconverged:
    logging.warning('%d of %d pixels did not converge.', unconverged,
                    height * width)

  alphas = solutions[..., :num_layers]
  colors = solutions[..., num_layers:].reshape(height, width, num_layers, 3)
  layers = np.concatenate([colors, alphas[..., np.newaxis]], axis=-1)
  return np.moveaxis(layers, 2, 0)
