import logging

import numpy as np
import yaml

from sift3d.Geometry.icosahedron import Mesh
from sift3d.Pyramid.image_pyramid import (
    compute_number_of_octaves, generate_gaussian_kernel_sigmas, create_base_volume,
    build_gaussian_pyramid, build_dog_pyramid,
)
from sift3d.Pyramid.find_extrema_voxel import NEIGHBORHOODS, find_scale_space_extrema, refine_keypoints
from sift3d.Pyramid.assign_orientations import SIGN_REFERENCES, assign_orientations
from sift3d.Pyramid.generate_descriptors import (
    HIST_TYPES, generate_descriptors, extract_dense_descriptors,
)

logger = logging.getLogger(__name__)

# 默认参数
DEFAULT_FIRST_OCTAVE = 0
DEFAULT_PEAK_THRESH = 0.03
DEFAULT_CORNER_THRESH = 0.5
DEFAULT_NUM_KP_LEVELS = 3
DEFAULT_SIGMA_N = 1.15
DEFAULT_SIGMA0 = 1.6

# 修改后需要重建金字塔的参数
STRUCTURAL_OPTIONS = ('first_octave', 'num_octaves', 'num_kp_levels', 'sigma_n', 'sigma0')

OPTION_NAMES = STRUCTURAL_OPTIONS + (
    'peak_thresh', 'corner_thresh', 'hist_type', 'extrema_neighborhood',
    'ori_sign_reference', 'solid_angle_weight', 'dense_rotate', 'match_max_dist',
)


def _invalid(name, value, reason):
    logger.error(f"参数 {name} 的取值 {value!r} 无效: {reason}")
    return ValueError(f"参数 {name} 的取值 {value!r} 无效: {reason}")


def _as_number(name, value):
    if isinstance(value, bool):
        raise _invalid(name, value, "必须是数值")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise _invalid(name, value, "必须是数值") from None


def _check_choice(name, value, choices):
    if value not in choices:
        raise _invalid(name, value, f"必须是 {choices} 之一")
    return value


class SIFT3D:
    """
    三维SIFT检测器与描述符提取器

    持有全部参数、只读的二十面体网格以及最近一次构建的金字塔。
    参数通过属性设置并即时校验，无效取值抛出 ValueError 且不修改原值；
    每次检测都重建金字塔，保留的结果只供 extract_descriptors 使用；
    修改结构参数（组、层、尺度）会丢弃保留的金字塔。

    用法:
    sift3d = SIFT3D(peak_thresh=0.05)
    keypoints = sift3d.detect_keypoints(volume)
    descriptors = sift3d.extract_descriptors(keypoints)
    """

    def __init__(self, first_octave=DEFAULT_FIRST_OCTAVE, peak_thresh=DEFAULT_PEAK_THRESH,
                 corner_thresh=DEFAULT_CORNER_THRESH, num_octaves=None,
                 num_kp_levels=DEFAULT_NUM_KP_LEVELS, sigma_n=DEFAULT_SIGMA_N,
                 sigma0=DEFAULT_SIGMA0, hist_type='icosahedron', extrema_neighborhood='face',
                 ori_sign_reference='last', solid_angle_weight=False, dense_rotate=False,
                 match_max_dist=None):
        self.gaussian_pyramid = None
        self.dog_pyramid = None

        self.first_octave = first_octave
        self.peak_thresh = peak_thresh
        self.corner_thresh = corner_thresh
        self.num_octaves = num_octaves
        self.num_kp_levels = num_kp_levels
        self.sigma_n = sigma_n
        self.sigma0 = sigma0
        self.hist_type = hist_type
        self.extrema_neighborhood = extrema_neighborhood
        self.ori_sign_reference = ori_sign_reference
        self.solid_angle_weight = solid_angle_weight
        self.dense_rotate = dense_rotate
        self.match_max_dist = match_max_dist

        # 网格只构建一次，之后只读
        self.mesh = Mesh()

    @classmethod
    def from_config(cls, config):
        """从参数字典创建检测器，未知的键会被拒绝"""
        config = dict(config or {})
        unknown = sorted(set(config) - set(OPTION_NAMES))
        if unknown:
            raise ValueError(f"未知的参数: {unknown}")
        if config.get('num_octaves') == 'auto':
            config['num_octaves'] = None
        return cls(**config)

    @classmethod
    def from_yaml(cls, path):
        """从YAML文件的 sift3d 段创建检测器"""
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
        return cls.from_config(config.get('sift3d', {}))

    def get_config(self):
        return {name: getattr(self, name) for name in OPTION_NAMES}

    def _invalidate(self, name):
        if self.gaussian_pyramid is not None:
            logger.debug(f"参数 {name} 已修改，金字塔需要重建")
        self.gaussian_pyramid = None
        self.dog_pyramid = None

    # ===== 参数校验 =====

    @property
    def first_octave(self):
        return self._first_octave

    @first_octave.setter
    def first_octave(self, value):
        if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
            raise _invalid('first_octave', value, "必须是整数")
        self._first_octave = int(value)
        self._invalidate('first_octave')

    @property
    def peak_thresh(self):
        return self._peak_thresh

    @peak_thresh.setter
    def peak_thresh(self, value):
        value = _as_number('peak_thresh', value)
        if not value > 0:
            raise _invalid('peak_thresh', value, "必须大于0")
        self._peak_thresh = float(value)

    @property
    def corner_thresh(self):
        return self._corner_thresh

    @corner_thresh.setter
    def corner_thresh(self, value):
        value = _as_number('corner_thresh', value)
        if not 0 <= value <= 1:
            raise _invalid('corner_thresh', value, "必须在 [0, 1] 范围内")
        self._corner_thresh = float(value)

    @property
    def num_octaves(self):
        """None 表示根据体数据尺寸自动计算"""
        return self._num_octaves

    @num_octaves.setter
    def num_octaves(self, value):
        if value is not None:
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
                raise _invalid('num_octaves', value, "必须是正整数或 None（自动）")
            value = int(value)
        self._num_octaves = value
        self._invalidate('num_octaves')

    @property
    def num_kp_levels(self):
        return self._num_kp_levels

    @num_kp_levels.setter
    def num_kp_levels(self, value):
        if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
            raise _invalid('num_kp_levels', value, "必须是正整数")
        self._num_kp_levels = int(value)
        self._invalidate('num_kp_levels')

    @property
    def sigma_n(self):
        return self._sigma_n

    @sigma_n.setter
    def sigma_n(self, value):
        value = _as_number('sigma_n', value)
        if not value >= 0:
            raise _invalid('sigma_n', value, "不能为负数")
        self._sigma_n = float(value)
        self._invalidate('sigma_n')

    @property
    def sigma0(self):
        return self._sigma0

    @sigma0.setter
    def sigma0(self, value):
        value = _as_number('sigma0', value)
        if not value >= 0:
            raise _invalid('sigma0', value, "不能为负数")
        self._sigma0 = float(value)
        self._invalidate('sigma0')

    @property
    def hist_type(self):
        return self._hist_type

    @hist_type.setter
    def hist_type(self, value):
        self._hist_type = _check_choice('hist_type', value, HIST_TYPES)

    @property
    def extrema_neighborhood(self):
        return self._extrema_neighborhood

    @extrema_neighborhood.setter
    def extrema_neighborhood(self, value):
        self._extrema_neighborhood = _check_choice('extrema_neighborhood', value, NEIGHBORHOODS)

    @property
    def ori_sign_reference(self):
        return self._ori_sign_reference

    @ori_sign_reference.setter
    def ori_sign_reference(self, value):
        self._ori_sign_reference = _check_choice('ori_sign_reference', value, SIGN_REFERENCES)

    @property
    def solid_angle_weight(self):
        return self._solid_angle_weight

    @solid_angle_weight.setter
    def solid_angle_weight(self, value):
        self._solid_angle_weight = bool(value)

    @property
    def dense_rotate(self):
        return self._dense_rotate

    @dense_rotate.setter
    def dense_rotate(self, value):
        self._dense_rotate = bool(value)

    @property
    def match_max_dist(self):
        return self._match_max_dist

    @match_max_dist.setter
    def match_max_dist(self, value):
        if value is not None:
            value = _as_number('match_max_dist', value)
            if not value > 0:
                raise _invalid('match_max_dist', value, "必须大于0或为 None")
            value = float(value)
        self._match_max_dist = value

    # ===== 处理流程 =====

    @staticmethod
    def _check_volume(volume):
        volume = np.asarray(volume)
        if volume.ndim == 4 and volume.shape[3] == 1:
            volume = volume[..., 0]
        if volume.ndim != 3:
            raise ValueError(f"只支持单通道三维体数据，实际形状为 {volume.shape}")
        return volume.astype(np.float32, copy=False)

    def build_pyramids(self, volume):
        """
        构建高斯金字塔与DoG金字塔

        参数:
        volume (np.ndarray): 单通道三维体数据 (nx, ny, nz)

        返回:
        tuple: (gaussian_pyramid, dog_pyramid)
        """
        volume = self._check_volume(volume)

        # 1. 计算金字塔组数
        if self.num_octaves is None:
            num_octaves = compute_number_of_octaves(volume.shape, self.first_octave)
        else:
            num_octaves = self.num_octaves
        logger.info(f"体数据尺寸 {volume.shape}，金字塔组数: {num_octaves}")

        # 2. 生成高斯核
        first_sigma, incremental_sigmas = generate_gaussian_kernel_sigmas(
            self.sigma0, self.sigma_n, self.num_kp_levels, self.first_octave)

        # 3. 构建高斯金字塔
        base_volume = create_base_volume(volume, self.first_octave, first_sigma)
        gaussian_pyramid = build_gaussian_pyramid(
            base_volume, self.first_octave, num_octaves, self.num_kp_levels,
            self.sigma0, incremental_sigmas)

        # 4. 构建DoG金字塔
        dog_pyramid = build_dog_pyramid(gaussian_pyramid)

        # 全部成功后才替换上一次的金字塔
        self.gaussian_pyramid = gaussian_pyramid
        self.dog_pyramid = dog_pyramid
        return gaussian_pyramid, dog_pyramid

    def detect_keypoints(self, volume):
        """
        检测关键点：极值检测、亚体素精化、方向分配

        参数:
        volume (np.ndarray): 单通道三维体数据

        返回:
        list: 关键点字典列表
        """
        gaussian_pyramid, dog_pyramid = self.build_pyramids(volume)

        keypoints = find_scale_space_extrema(dog_pyramid, self.peak_thresh, self.extrema_neighborhood)
        keypoints = refine_keypoints(dog_pyramid, keypoints)
        keypoints = assign_orientations(gaussian_pyramid, keypoints, self.corner_thresh,
                                        self.ori_sign_reference)
        return keypoints

    def extract_descriptors(self, keypoints):
        """
        为最近一次检测的关键点提取描述符

        参数:
        keypoints (list): detect_keypoints 返回的关键点

        返回:
        DescriptorStore: 描述符集合
        """
        if self.gaussian_pyramid is None:
            raise RuntimeError("尚未构建金字塔，请先调用 detect_keypoints")
        return generate_descriptors(self.gaussian_pyramid, keypoints, self.mesh,
                                    self.hist_type, self.solid_angle_weight)

    def extract_dense_descriptors(self, volume):
        """逐体素的二十面体梯度直方图，形状 (nx, ny, nz, 12)"""
        volume = self._check_volume(volume)
        return extract_dense_descriptors(volume, self.mesh, self.sigma_n, self.sigma0,
                                         rotate=self.dense_rotate,
                                         corner_thresh=self.corner_thresh,
                                         sign_reference=self.ori_sign_reference)


def extract_sift3d_features(volume, sift3d=None):
    """
    从输入体数据中提取SIFT3D特征（关键点和描述符）

    参数:
        volume (np.ndarray): 单通道三维体数据
        sift3d (SIFT3D): 检测器，None 时使用默认参数

    返回:
        keypoints (list): 关键点列表
        descriptors (DescriptorStore): 描述符集合
    """
    if sift3d is None:
        sift3d = SIFT3D()

    keypoints = sift3d.detect_keypoints(volume)
    descriptors = sift3d.extract_descriptors(keypoints)
    return keypoints, descriptors
