import math

import numpy as np
import pytest

from scanslam2d.geometry import SE2, normalize_angle


def test_normalize_angle_minus_pi_maps_to_pi():
    assert normalize_angle(-math.pi) == math.pi


@pytest.mark.parametrize("angle", np.linspace(-20.0, 20.0, 81))
def test_normalize_angle_range_and_direction(angle):
    wrapped = normalize_angle(angle)
    assert -math.pi < wrapped <= math.pi
    assert math.cos(wrapped) == pytest.approx(math.cos(angle), abs=1e-9)
    assert math.sin(wrapped) == pytest.approx(math.sin(angle), abs=1e-9)


def test_constructor_normalizes_theta():
    pose = SE2(1.0, 2.0, 2.5 * math.pi)
    assert pose.theta == pytest.approx(0.5 * math.pi)


def test_translation_returns_coordinates():
    pose = SE2(1.5, -2.0, 0.3)
    assert np.allclose(pose.translation(), [1.5, -2.0])


@pytest.mark.parametrize(
    "pose",
    [SE2(1.0, 2.0, 0.3), SE2(-3.0, 0.5, -2.9), SE2(0.2, -0.1, 1e-12), SE2(4.0, 4.0, 3.1)],
)
def test_inverse_composes_to_identity(pose):
    for product in (pose * pose.inverse(), pose.inverse() * pose):
        assert product.x == pytest.approx(0.0, abs=1e-12)
        assert product.y == pytest.approx(0.0, abs=1e-12)
        assert product.theta == pytest.approx(0.0, abs=1e-12)


@pytest.mark.parametrize(
    "pose",
    [SE2(1.0, 2.0, 0.3), SE2(-3.0, 0.5, -2.9), SE2(0.2, -0.1, 1e-12), SE2(4.0, -1.0, 3.0)],
)
def test_log_exp_round_trip(pose):
    back = SE2.from_log(pose.log())
    assert back.x == pytest.approx(pose.x, abs=1e-9)
    assert back.y == pytest.approx(pose.y, abs=1e-9)
    assert back.theta == pytest.approx(pose.theta, abs=1e-12)


def test_exp_log_round_trip_on_tangent_vector():
    xi = np.array([0.4, -1.2, 0.7])
    assert np.allclose(SE2.from_log(xi).log(), xi)


def test_pure_translation_log_is_translation():
    pose = SE2(3.0, -4.0, 0.0)
    assert np.allclose(pose.log(), [3.0, -4.0, 0.0])


def test_transform_pinned_quarter_turn():
    pose = SE2(1.0, 0.0, math.pi / 2)
    assert np.allclose(pose.transform([1.0, 0.0]), [1.0, 1.0])


def test_composition_matches_sequential_transform():
    a = SE2(1.0, -2.0, 0.4)
    b = SE2(-0.5, 3.0, -1.1)
    point = np.array([2.0, 0.5])
    assert np.allclose((a * b).transform(point), a.transform(b.transform(point)))


def test_composition_is_associative():
    a, b, c = SE2(1.0, 2.0, 0.1), SE2(-1.0, 0.5, 2.0), SE2(0.3, -0.7, -1.4)
    left = (a * b) * c
    right = a * (b * c)
    assert left.x == pytest.approx(right.x)
    assert left.y == pytest.approx(right.y)
    assert left.theta == pytest.approx(right.theta)


def test_batch_transform_matches_single_points():
    pose = SE2(0.5, -0.5, 0.8)
    points = np.array([[1.0, 0.0], [0.0, 2.0], [-3.0, 1.5]])
    batch = pose.transform(points)
    assert batch.shape == (3, 2)
    for row, point in zip(batch, points):
        assert np.allclose(row, pose.transform(point))


def test_mul_with_point_equals_transform():
    pose = SE2(2.0, 1.0, -0.6)
    assert np.allclose(pose * np.array([1.0, 1.0]), pose.transform([1.0, 1.0]))


def test_transform_preserves_distances():
    pose = SE2(5.0, -3.0, 1.9)
    p, q = np.array([1.0, 2.0]), np.array([-4.0, 0.5])
    assert np.linalg.norm(pose.transform(p) - pose.transform(q)) == pytest.approx(np.linalg.norm(p - q))


def test_transform_rejects_wrong_shape():
    with pytest.raises(ValueError):
        SE2().transform([1.0, 2.0, 3.0])


def test_mul_with_unsupported_type_raises():
    with pytest.raises(TypeError):
        SE2() * "pose"


def test_oplus_adds_translation_and_rotation():
    updated = SE2(1.0, 2.0, 0.3).oplus([0.5, -1.0, 0.2])
    assert updated.x == pytest.approx(1.5)
    assert updated.y == pytest.approx(1.0)
    assert updated.theta == pytest.approx(0.5)