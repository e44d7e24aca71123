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

"""Porter-Duff compositing operators expressed as region weights."""

from typing import NamedTuple

from unmixing.jax import constants


class OperatorWeights(NamedTuple):
  """Region weights of a compositing operator.

  A pixel covered by a source with alpha a_s and a destination with alpha a_d
  is split into three regions: the overlap (a_s * a_d), source only
  (a_s * (1 - a_d)) and destination only ((1 - a_s) * a_d). An operator keeps
  each region with weight x, y and z respectively. In the overlap, the visible
  color is the blend of source and destination if blend_overlap is True, and
  the destination color otherwise.
  """
  x: float
  y: float
  z: float
  blend_overlap: bool = True


_OPERATOR_WEIGHTS = {
    constants.CompositeOperator.SOURCE_OVER: OperatorWeights(1.0, 1.0, 1.0),
    constants.CompositeOperator.SOURCE_ATOP: OperatorWeights(1.0, 0.0, 1.0),
    constants.CompositeOperator.SOURCE_IN: OperatorWeights(1.0, 0.0, 0.0),
    constants.CompositeOperator.SOURCE_OUT: OperatorWeights(0.0, 1.0, 0.0),
    constants.CompositeOperator.DESTINATION_OVER: OperatorWeights(
        1.0, 1.0, 1.0, blend_overlap=False),
    constants.CompositeOperator.DESTINATION_ATOP: OperatorWeights(
        1.0, 1.0, 0.0, blend_overlap=False),
    constants.CompositeOperator.DESTINATION_IN: OperatorWeights(
        1.0, 0.0, 0.0, blend_overlap=False),
    constants.CompositeOperator.DESTINATION_OUT: OperatorWeights(
        0.0, 0.0, 1.0),
    constants.CompositeOperator.XOR: OperatorWeights(0.0, 1.0, 1.0),
}


def to_composite_operator(comp_op) -> constants.CompositeOperator:
  """Converts a CompositeOperator or its string value to a CompositeOperator."""
  try:
    return constants.CompositeOperator(comp_op)
  except ValueError:
    raise ValueError(f'Unsupported compositing operator: {comp_op}') from None


def get_operator_weights(comp_op) -> OperatorWeights:
  comp_op = to_composite_operator(comp_op)
  if comp_op not in _OPERATOR_WEIGHTS:
    raise ValueError(f'Unsupported compositing operator: {comp_op}')
  return _OPERATOR_WEIGHTS[comp_op]
