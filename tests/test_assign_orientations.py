import numpy as np
import pytest

from sift3d.Pyramid.image_pyramid import Pyramid
from sift3d.Pyramid.assign_orientations import (
    OrientationStatus, sphere_window, assign_eig_orientation, assign_orientations,
)

CENTER = (16.0, 16.0, 16.0)


@pytest.fixture
def anisotropic(quadric):
    """32^3 各向异性二次曲面，顶点相对 CENTER 偏移 (3, 2, 1)"""
    return quadric((32, 32, 32), (19.0, 18.0, 17.0), (1.0, 4.0, 9.0))


class TestSphereWindow:

    def test_voxels_lie_inside_radius(self, anisotropic):
        voxels, disp, sq_dist, grads = sphere_window(anisotropic, CENTER, 3.0)

        assert len(voxels) == len(disp) == len(sq_dist) == len(grads)
        assert np.all(sq_dist <= 9.0)
        assert np.allclose(disp, voxels + 0.5 - np.array(CENTER))

    def test_scan_order_has_x_innermost(self, anisotropic):
        voxels, _, _, _ = sphere_window(anisotropic, CENTER, 3.0)
        keys = voxels[:, 2] * 10000 + voxels[:, 1] * 100 + voxels[:, 0]
        assert np.all(np.diff(keys) > 0)

    def test_window_stays_off_the_border(self, anisotropic):
        voxels, _, _, _ = sphere_window(anisotropic, (1.0, 1.0, 30.5), 4.0)
        assert voxels.min() >= 1
        assert voxels.max() <= 30

    def test_central_difference_gradient(self, anisotropic):
        voxels, disp, _, grads = sphere_window(anisotropic, CENTER, 2.0)
        offset = np.array([16.0 - 19.0, 16.0 - 18.0, 16.0 - 17.0])
        # 二次函数的中心差分是精确的
        expected = 2.0 * np.array([1.0, 4.0, 9.0]) * (disp + offset)
        assert np.allclose(grads, expected)


class TestEigOrientation:

    def test_accepts_anisotropic_structure(self, anisotropic):
        status, R = assign_eig_orientation(anisotropic, CENTER, 2.0, 0.0)

        assert status is OrientationStatus.ACCEPTED
        assert np.allclose(R.T @ R, np.eye(3), atol=1e-9)
        assert np.linalg.det(R) == pytest.approx(1.0)

    def test_is_deterministic(self, anisotropic):
        _, R1 = assign_eig_orientation(anisotropic, CENTER, 2.0, 0.0)
        _, R2 = assign_eig_orientation(anisotropic, CENTER, 2.0, 0.0)
        assert np.array_equal(R1, R2)

    def test_window_sign_reference_points_axes_along_gradient(self, anisotropic):
        status, R = assign_eig_orientation(anisotropic, CENTER, 2.0, 0.0, sign_reference='window')
        _, _, _, grads = sphere_window(anisotropic, CENTER, 6.0)
        window_grad = grads.sum(axis=0)

        assert status is OrientationStatus.ACCEPTED
        assert np.dot(R[:, 0], window_grad) > 0
        assert np.dot(R[:, 1], window_grad) > 0

    def test_last_sign_reference_uses_last_scanned_gradient(self, anisotropic):
        _, R = assign_eig_orientation(anisotropic, CENTER, 2.0, 0.0, sign_reference='last')
        _, _, _, grads = sphere_window(anisotropic, CENTER, 6.0)

        assert np.dot(R[:, 0], grads[-1]) > 0
        assert np.dot(R[:, 1], grads[-1]) > 0

    def test_flat_region_is_rejected(self):
        volume = np.full((32, 32, 32), 5.0)
        status, R = assign_eig_orientation(volume, CENTER, 2.0, 0.0)
        assert status is OrientationStatus.REJECTED
        assert R is None

    def test_isotropic_structure_is_rejected(self, quadric):
        volume = quadric((32, 32, 32), (19.0, 18.0, 17.0), (1.0, 1.0, 1.0))
        status, _ = assign_eig_orientation(volume, CENTER, 2.0, 0.0)
        assert status is OrientationStatus.REJECTED

    def test_strict_corner_threshold_rejects(self, anisotropic):
        status, _ = assign_eig_orientation(anisotropic, CENTER, 2.0, 1.0)
        assert status is OrientationStatus.REJECTED

    def test_unknown_sign_reference_raises(self, anisotropic):
        with pytest.raises(ValueError):
            assign_eig_orientation(anisotropic, CENTER, 2.0, 0.0, sign_reference='first')

    def test_decomposition_failure_raises_runtime_error(self, anisotropic, monkeypatch):
        def fail(_):
            raise np.linalg.LinAlgError("did not converge")

        monkeypatch.setattr(np.linalg, "eigh", fail)
        with pytest.raises(RuntimeError):
            assign_eig_orientation(anisotropic, CENTER, 2.0, 0.0)


def test_assign_orientations_drops_rejected_and_keeps_order(quadric):
    volume = quadric((48, 32, 32), (15.0, 18.0, 17.0), (1.0, 4.0, 9.0))
    volume[24:] = 7.0
    gpyr = Pyramid(first_octave=0, num_octaves=1, first_level=0, num_levels=1,
                   num_kp_levels=3, sigma0=1.6, levels=[[volume]])

    def keypoint(x):
        # sigma = 1.5 * 4/3 = 2
        return {'o': 0, 's': 0, 'xd': x, 'yd': 16.0, 'zd': 16.0, 'sd': 4 / 3, 'sd_rel': 4 / 3}

    keypoints = [keypoint(12.0), keypoint(36.0), keypoint(11.0)]
    oriented = assign_orientations(gpyr, keypoints, 0.0)

    assert [kp['xd'] for kp in oriented] == [12.0, 11.0]
    assert all(kp['R'].shape == (3, 3) for kp in oriented)
    assert 'R' not in keypoints[1]
