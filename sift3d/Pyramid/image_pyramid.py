import math
import logging
from dataclasses import dataclass, field

import numpy as np
from scipy.ndimage import gaussian_filter, zoom
import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)

# 高斯核截断半径（以sigma为单位）
GAUSS_TRUNCATE = 3.0

# 每个维度的最小尺寸为 2^3 = 8 体素
MIN_LOG2_SIZE = 3


@dataclass
class Pyramid:
    """
    尺度空间金字塔，结构为 levels[组][层]

    组索引范围为 [first_octave, first_octave + num_octaves - 1]，
    层索引范围为 [first_level, first_level + num_levels - 1]，
    第 (o, s) 层的绝对尺度为 sigma0 * 2^(o + s / num_kp_levels)。
    """
    first_octave: int
    num_octaves: int
    first_level: int
    num_levels: int
    num_kp_levels: int
    sigma0: float
    levels: list = field(default_factory=list)

    @property
    def last_octave(self):
        return self.first_octave + self.num_octaves - 1

    @property
    def last_level(self):
        return self.first_level + self.num_levels - 1

    def level(self, o, s):
        """返回第 (o, s) 层的体数据"""
        return self.levels[o - self.first_octave][s - self.first_level]

    def scale(self, o, s):
        """第 (o, s) 层的绝对尺度，s 可以是连续值"""
        return self.sigma0 * 2.0 ** (o + s / float(self.num_kp_levels))

    def octave(self, o):
        return self.levels[o - self.first_octave]

    def octaves(self):
        """按顺序遍历 (组索引, 该组各层列表)"""
        for octave_offset, octave_levels in enumerate(self.levels):
            yield self.first_octave + octave_offset, octave_levels


def compute_number_of_octaves(volume_shape, first_octave=0):
    """
    计算体数据金字塔的组数(octaves)

    参数:
    volume_shape (tuple): 体数据的尺寸 (nx, ny, nz)
    first_octave (int): 第一组的索引

    返回:
    int: 金字塔的组数

    公式:
    last_octave = floor(log₂(min_dimension)) - 3
    octaves = last_octave - first_octave + 1

    解释:
    1. 第 o 组的尺寸为输入尺寸的 2^(-o) 倍
    2. 最小尺寸限制：最后一组任意维度都不小于 8 个体素
    """
    min_dimension = min(volume_shape)
    last_octave = int(math.floor(math.log2(min_dimension))) - MIN_LOG2_SIZE
    num_octaves = last_octave - first_octave + 1

    if num_octaves < 1:
        raise ValueError(f"体数据尺寸过小，无法构建金字塔: {tuple(volume_shape)}")

    return num_octaves


def generate_gaussian_kernel_sigmas(sigma0, sigma_n, num_kp_levels, first_octave=0):
    """
    生成高斯金字塔每层所需的模糊核sigma值

    参数:
    sigma0 (float): 第0层的尺度（通常为1.6）
    sigma_n (float): 输入体数据已有的模糊量（通常为1.15）
    num_kp_levels (int): 每组中用于检测关键点的层数（通常为3）
    first_octave (int): 第一组的索引

    返回:
    tuple: (first_sigma, incremental_sigmas)
        first_sigma (float): 作用于输入体数据（第一组分辨率下）的模糊量
        incremental_sigmas (np.ndarray): 第 s 层相对第 s-1 层需要添加的模糊量，
            按 s = 0 .. num_kp_levels + 1 排列，单位为组内体素

    公式推导:
    1. 每组的层数 = num_kp_levels + 3，层索引从 -1 开始
    2. 第s层的组内尺度: σ_s = σ0 * 2^(s / num_kp_levels)
    3. 相邻层间需要添加的模糊量:
        σ_diff = √(σ_s² - σ_{s-1}²)
    4. 第一层：输入的模糊 σ_n 在第一组分辨率下为 σ_n * 2^(-first_octave)
    """
    first_level = -1
    last_level = num_kp_levels + 1

    # 第一层的目标尺度与输入已有模糊，都换算到第一组的体素单位
    sigma_first = sigma0 * 2.0 ** (first_level / float(num_kp_levels))
    sigma_input = sigma_n * 2.0 ** (-first_octave)
    first_sigma = math.sqrt(max(sigma_first ** 2 - sigma_input ** 2, 0.0))

    incremental_sigmas = np.zeros(last_level - first_level)
    for index, s in enumerate(range(first_level + 1, last_level + 1)):
        sigma_previous = sigma0 * 2.0 ** ((s - 1) / float(num_kp_levels))
        sigma_total = sigma0 * 2.0 ** (s / float(num_kp_levels))
        incremental_sigmas[index] = math.sqrt(sigma_total ** 2 - sigma_previous ** 2)

    return first_sigma, incremental_sigmas


def smooth_volume(volume, sigma):
    """可分离高斯平滑，边界按最近体素延拓（与金字塔构建一致）"""
    if sigma <= 0:
        return volume.astype(np.float32, copy=True)
    return gaussian_filter(volume, sigma=sigma, truncate=GAUSS_TRUNCATE,
                           mode='nearest', output=np.float32)


def downsample_2x(volume):
    """隔点抽取，每个维度的尺寸变为 floor(n / 2)"""
    nx, ny, nz = volume.shape
    return np.ascontiguousarray(
        volume[0:2 * (nx // 2):2, 0:2 * (ny // 2):2, 0:2 * (nz // 2):2]
    )


def create_base_volume(volume, first_octave, first_sigma):
    """
    创建基础体数据：按第一组的分辨率重采样，并应用第一层的高斯模糊

    参数:
    volume (np.ndarray): 输入体数据，形状为 (nx, ny, nz)
    first_octave (int): 第一组的索引，负数表示上采样
    first_sigma (float): 第一层需要添加的模糊量

    返回:
    np.ndarray: 处理后的基础体数据 (float32)
    """
    base = np.asarray(volume, dtype=np.float32)

    # 1. 重采样（first_octave 为 0 时不变）
    if first_octave != 0:
        factor = 2.0 ** (-first_octave)
        base = zoom(base, factor, order=1, mode='nearest').astype(np.float32)

    # 2. 应用高斯模糊
    return smooth_volume(base, first_sigma)


def build_gaussian_pyramid(base_volume, first_octave, num_octaves, num_kp_levels,
                           sigma0, incremental_sigmas):
    """
    构建高斯金字塔

    参数:
    base_volume (np.ndarray): 基础体数据（已重采样和模糊），即第 (first_octave, -1) 层
    first_octave (int): 第一组的索引
    num_octaves (int): 金字塔的组数
    num_kp_levels (int): 每组用于检测关键点的层数
    sigma0 (float): 第0层的尺度
    incremental_sigmas (np.ndarray): 层间增量模糊量

    返回:
    Pyramid: 高斯金字塔，每组 num_kp_levels + 3 层

    金字塔结构:
    1. 每组的第一层（s = -1）由上一组的最后一层降采样得到
    2. 每组内部通过连续模糊构建
    """
    pyramid = Pyramid(first_octave=first_octave, num_octaves=num_octaves,
                      first_level=-1, num_levels=num_kp_levels + 3,
                      num_kp_levels=num_kp_levels, sigma0=sigma0)

    current_volume = base_volume
    for octave_offset in range(num_octaves):
        octave_levels = [current_volume]

        for kernel_sigma in incremental_sigmas:
            current_volume = smooth_volume(current_volume, kernel_sigma)
            octave_levels.append(current_volume)

        pyramid.levels.append(octave_levels)

        # 准备下一组的基础体数据
        if octave_offset < num_octaves - 1:
            current_volume = downsample_2x(octave_levels[-1])

    logger.debug(f"高斯金字塔: {num_octaves} 组, 每组 {pyramid.num_levels} 层")
    return pyramid


def build_dog_pyramid(gaussian_pyramid):
    """
    构建高斯差分金字塔(DoG)

    参数:
    gaussian_pyramid (Pyramid): 高斯金字塔

    返回:
    Pyramid: DoG金字塔，每组的层数比高斯金字塔少1

    计算原理:
    DoG[s] = G[s] - G[s + 1]
    """
    dog_pyramid = Pyramid(first_octave=gaussian_pyramid.first_octave,
                          num_octaves=gaussian_pyramid.num_octaves,
                          first_level=gaussian_pyramid.first_level,
                          num_levels=gaussian_pyramid.num_levels - 1,
                          num_kp_levels=gaussian_pyramid.num_kp_levels,
                          sigma0=gaussian_pyramid.sigma0)

    for _, gaussian_octave in gaussian_pyramid.octaves():
        dog_octave = []
        for layer_index in range(len(gaussian_octave) - 1):
            dog_octave.append(gaussian_octave[layer_index] - gaussian_octave[layer_index + 1])
        dog_pyramid.levels.append(dog_octave)

    return dog_pyramid


def visualize_pyramids(gaussian_pyramid, dog_pyramid, octave_indices=None, show=True):
    """
    可视化金字塔结构（显示每层的中间z切片）

    参数:
    gaussian_pyramid (Pyramid): 高斯金字塔
    dog_pyramid (Pyramid): DoG金字塔
    octave_indices (list, optional): 要显示的组索引列表，None表示显示所有组
    show (bool): 是否阻塞显示窗口

    返回:
    list: 创建的 matplotlib Figure 列表
    """
    if octave_indices is None:
        octave_indices = list(range(gaussian_pyramid.first_octave, gaussian_pyramid.last_octave + 1))
    else:
        octave_indices = [o for o in octave_indices
                          if gaussian_pyramid.first_octave <= o <= gaussian_pyramid.last_octave]

    figures = []
    for title, pyramid in (('Gaussian pyramid', gaussian_pyramid), ('DoG pyramid', dog_pyramid)):
        fig = plt.figure(figsize=(15, 10))
        fig.suptitle(title)
        plot_index = 1
        for o in octave_indices:
            octave = pyramid.octave(o)
            for layer_offset, volume in enumerate(octave):
                ax = fig.add_subplot(len(octave_indices), len(octave), plot_index)
                ax.imshow(volume[:, :, volume.shape[2] // 2].T, cmap='gray')
                ax.set_title(f'O{o}L{layer_offset + pyramid.first_level}')
                ax.axis('off')
                plot_index += 1
        fig.tight_layout()
        figures.append(fig)

    if show:
        plt.show(block=True)

    return figures
