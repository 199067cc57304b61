import os

import numpy as np
import pytest

from sift3d.SIFT.extract_sift3d_features import SIFT3D, extract_sift3d_features


class TestOptions:

    def test_defaults(self):
        config = SIFT3D().get_config()
        assert config['first_octave'] == 0
        assert config['peak_thresh'] == pytest.approx(0.03)
        assert config['corner_thresh'] == pytest.approx(0.5)
        assert config['num_octaves'] is None
        assert config['num_kp_levels'] == 3
        assert config['sigma_n'] == pytest.approx(1.15)
        assert config['sigma0'] == pytest.approx(1.6)
        assert config['hist_type'] == 'icosahedron'
        assert config['ori_sign_reference'] == 'last'

    @pytest.mark.parametrize("name, value", [
        ('peak_thresh', 0.0),
        ('peak_thresh', -1.0),
        ('peak_thresh', 'high'),
        ('corner_thresh', 1.5),
        ('corner_thresh', -0.1),
        ('num_kp_levels', 0),
        ('num_kp_levels', 2.5),
        ('num_octaves', 0),
        ('num_octaves', True),
        ('first_octave', 1.5),
        ('sigma_n', -0.5),
        ('sigma0', None),
        ('hist_type', 'cube'),
        ('extrema_neighborhood', 'sphere'),
        ('ori_sign_reference', 'first'),
        ('match_max_dist', 0.0),
    ])
    def test_invalid_value_is_rejected_and_old_value_kept(self, name, value):
        sift3d = SIFT3D()
        before = getattr(sift3d, name)
        with pytest.raises(ValueError):
            setattr(sift3d, name, value)
        assert getattr(sift3d, name) == before

    def test_error_names_the_option_and_value(self):
        with pytest.raises(ValueError, match=r"peak_thresh.*-1\.0"):
            SIFT3D().peak_thresh = -1.0

    def test_from_config(self):
        sift3d = SIFT3D.from_config({'peak_thresh': 0.1, 'num_octaves': 'auto', 'hist_type': 'spherical'})
        assert sift3d.peak_thresh == pytest.approx(0.1)
        assert sift3d.num_octaves is None
        assert sift3d.hist_type == 'spherical'

    def test_from_config_rejects_unknown_keys(self):
        with pytest.raises(ValueError):
            SIFT3D.from_config({'peak_threshold': 0.1})

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "sift3d.yaml"
        path.write_text("sift3d:\n  corner_thresh: 0.3\n  num_octaves: 2\nmatching:\n  nn_thresh: 0.7\n",
                        encoding="utf-8")
        sift3d = SIFT3D.from_yaml(path)
        assert sift3d.corner_thresh == pytest.approx(0.3)
        assert sift3d.num_octaves == 2

    def test_shipped_config_matches_defaults(self):
        path = os.path.join(os.path.dirname(__file__), "..", "config", "sift3d.yaml")
        assert SIFT3D.from_yaml(path).get_config() == SIFT3D().get_config()


class TestPyramids:

    def test_structural_change_invalidates_pyramids(self, smooth_noise):
        sift3d = SIFT3D()
        sift3d.build_pyramids(smooth_noise((16, 16, 16)))
        assert sift3d.gaussian_pyramid is not None

        sift3d.peak_thresh = 0.2
        assert sift3d.gaussian_pyramid is not None

        sift3d.sigma0 = 1.8
        assert sift3d.gaussian_pyramid is None
        assert sift3d.dog_pyramid is None

    def test_every_build_replaces_the_kept_pyramids(self, smooth_noise):
        sift3d = SIFT3D()
        first, _ = sift3d.build_pyramids(smooth_noise((16, 16, 16), seed=1))
        second, dog = sift3d.build_pyramids(smooth_noise((16, 16, 16), seed=2))

        assert second is not first
        assert sift3d.gaussian_pyramid is second
        assert sift3d.dog_pyramid is dog
        assert not np.allclose(first.level(0, 0), second.level(0, 0))

    def test_failed_build_keeps_previous_pyramids(self, smooth_noise):
        sift3d = SIFT3D()
        gpyr, _ = sift3d.build_pyramids(smooth_noise((16, 16, 16)))
        with pytest.raises(ValueError):
            sift3d.build_pyramids(np.zeros((4, 4, 4)))
        assert sift3d.gaussian_pyramid is gpyr

    def test_descriptors_require_pyramids(self):
        with pytest.raises(RuntimeError):
            SIFT3D().extract_descriptors([])

    @pytest.mark.parametrize("shape", [(16, 16), (16, 16, 16, 2), (2, 16, 16, 16)])
    def test_rejects_non_scalar_volumes(self, shape):
        with pytest.raises(ValueError):
            SIFT3D().build_pyramids(np.zeros(shape))

    def test_trailing_singleton_channel_is_accepted(self, smooth_noise):
        gpyr, _ = SIFT3D().build_pyramids(smooth_noise((16, 16, 16))[..., np.newaxis])
        assert gpyr.level(0, 0).shape == (16, 16, 16)

    def test_upsampled_first_octave(self, smooth_noise):
        sift3d = SIFT3D(first_octave=-1)
        gpyr, dog = sift3d.build_pyramids(smooth_noise((16, 16, 16)))

        assert gpyr.first_octave == -1
        assert gpyr.level(-1, -1).shape == (32, 32, 32)
        assert dog.num_octaves == gpyr.num_octaves
        assert sift3d.extract_descriptors([]).shape == (16, 16, 16)

    def test_explicit_number_of_octaves(self, smooth_noise):
        gpyr, _ = SIFT3D(num_octaves=1).build_pyramids(smooth_noise((32, 32, 32)))
        assert gpyr.num_octaves == 1


class TestPipeline:

    def test_features_are_consistent(self, smooth_noise):
        sift3d = SIFT3D(peak_thresh=0.1, corner_thresh=0.1)
        keypoints, descriptors = extract_sift3d_features(smooth_noise((32, 32, 32), seed=11), sift3d)

        assert len(keypoints) == len(descriptors)
        assert descriptors.shape == (32, 32, 32)
        for kp, coord in zip(keypoints, descriptors.coords):
            assert kp['R'].shape == (3, 3)
            assert np.allclose(coord, np.array([kp['xd'], kp['yd'], kp['zd']]) * 2 ** kp['o'])
        if len(descriptors):
            assert np.allclose(np.linalg.norm(descriptors.features, axis=1), 1.0, atol=1e-6)

    def test_rotation_invariance(self, smooth_noise):
        n = 32
        volume = smooth_noise((n, n, n), seed=12)
        rotated = np.rot90(volume, axes=(0, 1)).copy()
        sift3d = SIFT3D(peak_thresh=0.1, corner_thresh=0.1, ori_sign_reference='window')

        keypoints_a, descriptors_a = extract_sift3d_features(volume, sift3d)
        keypoints_b, descriptors_b = extract_sift3d_features(rotated, sift3d)

        # 只比较第0组：降采样在翻转后取到的体素不同
        pairs = []
        for i, a in enumerate(keypoints_a):
            if a['o'] != 0:
                continue
            expected = np.array([n - a['yd'], a['xd'], a['zd']])
            for j, b in enumerate(keypoints_b):
                if b['o'] == 0 and b['s'] == a['s'] and \
                        np.max(np.abs(np.array([b['xd'], b['yd'], b['zd']]) - expected)) < 1e-3:
                    pairs.append((i, j))
                    break

        assert len(pairs) >= 1
        ssd = [np.sum((descriptors_a.features[i] - descriptors_b.features[j]) ** 2) for i, j in pairs]
        assert np.mean(np.array(ssd) < 1e-3) >= 0.9


def test_dense_descriptors_follow_options(smooth_noise):
    sift3d = SIFT3D()
    dense = sift3d.extract_dense_descriptors(10.0 * smooth_noise((12, 12, 12)) + 20.0)
    assert dense.shape == (12, 12, 12, 12)
    with pytest.raises(ValueError):
        sift3d.extract_dense_descriptors(np.zeros((12, 12)))
