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

"""Color prior models used by the unmixing energy.

A color model scores how plausible a color is for a layer: low cost means
plausible. The unmixing energy only needs the cost of a color and its gradient
w.r.t. the color, so any object providing cost() and gradient() can be used.
Models are immutable and may be shared between concurrent solves.
"""

import abc

from flax import struct
import jax.numpy as jnp


class ColorModel(abc.ABC):
  """Interface of a color prior: a scalar cost and its gradient."""

  @abc.abstractmethod
  def cost(self, color: jnp.ndarray) -> jnp.ndarray:
    """Returns the scalar cost of a [3] color."""

  @abc.abstractmethod
  def gradient(self, color: jnp.ndarray) -> jnp.ndarray:
    """Returns the [3] gradient of cost() w.r.t. the color."""


@struct.dataclass
class GaussianColorModel(ColorModel):
  """A Gaussian color distribution scored by squared Mahalanobis distance."""
  mean: jnp.ndarray
  inverse_covariance: jnp.ndarray

  def __post_init__(self):
    try:
      mean_shape = self.mean.shape
      inverse_covariance_shape = self.inverse_covariance.shape
    except AttributeError:
      return
    if mean_shape != (3,):
      raise ValueError(f'mean must have shape [3], but found {mean_shape}')
    if inverse_covariance_shape != (3, 3):
      raise ValueError(
          f'inverse_covariance must have shape [3, 3], but found '
          f'{inverse_covariance_shape}')

  @classmethod
  def create(cls, mean, covariance):
    """Creates a model from a mean and a (invertible) covariance matrix."""
    mean = jnp.asarray(mean, dtype=float)
    covariance = jnp.asarray(covariance, dtype=float)
    return cls(mean=mean, inverse_covariance=jnp.linalg.inv(covariance))

  @classmethod
  def from_colors(cls, colors, regularization=1e-4):
    """Fits a model to a [M, 3] array of sample colors.

    Args:
      colors: a [M, 3] array of RGB samples with M >= 1.
      regularization: value added to the covariance diagonal so that the
        covariance stays invertible for degenerate samples.

    Returns:
      A GaussianColorModel.
    """
    colors = jnp.asarray(colors, dtype=float)
    if colors.ndim != 2 or colors.shape[-1] != 3 or colors.shape[0] < 1:
      raise ValueError(
          f'colors must have shape [M, 3] with M >= 1, but found '
          f'{colors.shape}')
    mean = jnp.mean(colors, axis=0)
    centered = colors - mean
    covariance = centered.T @ centered / colors.shape[0]
    covariance = covariance + regularization * jnp.eye(3)
    return cls.create(mean, covariance)

  def cost(self, color):
    offset = jnp.asarray(color) - self.mean
    return offset @ self.inverse_covariance @ offset

  def gradient(self, color):
    offset = jnp.asarray(color) - self.mean
    return (self.inverse_covariance + self.inverse_covariance.T) @ offset


@struct.dataclass
class UniformColorModel(ColorModel):
  """A prior that accepts every color at zero cost."""

  def cost(self, color):
    return jnp.zeros((), dtype=jnp.asarray(color).dtype)

  def gradient(self, color):
    return jnp.zeros_like(jnp.asarray(color))
