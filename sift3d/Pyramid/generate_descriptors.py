import math
import logging
from dataclasses import dataclass

import numpy as np
from scipy.ndimage import gaussian_filter

from sift3d.Geometry.icosahedron import ICOS_NVERT, FLT_EPSILON
from sift3d.Pyramid.assign_orientations import (
    ORI_SIG_FCTR, OrientationStatus, assign_eig_orientation, sphere_window,
)
from sift3d.Pyramid.image_pyramid import GAUSS_TRUNCATE, smooth_volume

logger = logging.getLogger(__name__)

# 描述符窗口参数
NHIST_PER_DIM = 4                 # 每个维度的子区域数
DESC_NUM_TOTAL_HIST = NHIST_PER_DIM ** 3
DESC_SIG_FCTR = 7.071067812       # 5 * sqrt(2)
DESC_RAD_FCTR = 2.0

# 球坐标直方图的分箱数
NBINS_AZ = 8
NBINS_PO = 4

HIST_TYPES = ('icosahedron', 'spherical')

DBL_EPSILON = float(np.finfo(np.float64).eps)

# 每批处理的向量数，限制网格求交的中间数组大小
BIN_CHUNK_SIZE = 65536


def hist_numel(hist_type):
    """单个方向直方图的分箱数"""
    if hist_type == 'icosahedron':
        return ICOS_NVERT
    if hist_type == 'spherical':
        return NBINS_AZ * NBINS_PO
    raise ValueError(f"未知的直方图类型: {hist_type}，可选值为 {HIST_TYPES}")


def desc_numel(hist_type='icosahedron'):
    """描述符长度：64个直方图 × 每个直方图的分箱数"""
    return DESC_NUM_TOTAL_HIST * hist_numel(hist_type)


def trunc_thresh(hist_type='icosahedron'):
    """截断阈值，按描述符长度缩放（128维时为0.2）"""
    return 0.2 * 128 / desc_numel(hist_type)


@dataclass
class DescriptorStore:
    """
    一组描述符及其位置

    coords: (N, 3) 基础组坐标
    scales: (N,) 绝对尺度
    features: (N, D) 特征向量
    shape: 输入体数据的尺寸 (nx, ny, nz)，用于匹配时的距离归一化
    """
    coords: np.ndarray
    scales: np.ndarray
    features: np.ndarray
    shape: tuple

    def __len__(self):
        return self.features.shape[0]

    @property
    def num_features(self):
        return self.features.shape[1]

    def to_matrix(self):
        """导出为 (N, 3 + D) 矩阵 [x, y, z, f0 ... f(D-1)]"""
        return np.hstack([self.coords, self.features])

    @classmethod
    def from_matrix(cls, matrix, num_features=None, shape=None):
        """
        从 (N, 3 + D) 矩阵读取描述符

        参数:
        matrix (np.ndarray): 描述符矩阵
        num_features (int): 期望的特征维数，默认为二十面体直方图的长度
        shape (tuple): 体数据尺寸；未给出时用坐标的包围盒估计

        返回:
        DescriptorStore: 描述符集合（尺度信息不在矩阵中，置为0）
        """
        if num_features is None:
            num_features = desc_numel('icosahedron')

        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[0] < 1:
            raise ValueError(f"描述符矩阵至少需要一行，实际形状为 {matrix.shape}")
        if matrix.shape[1] != 3 + num_features:
            raise ValueError(f"描述符矩阵应有 {3 + num_features} 列，实际为 {matrix.shape[1]} 列")

        coords = matrix[:, :3].copy()
        features = matrix[:, 3:].copy()
        if shape is None:
            shape = tuple(int(math.ceil(v)) for v in coords.max(axis=0) + 1)

        return cls(coords=coords, scales=np.zeros(len(coords)), features=features, shape=tuple(shape))


def icosahedral_bins(vectors, mesh):
    """
    批量查找向量穿过的面，返回 (valid, vertex_bins, bary)

    vertex_bins 为该面三个顶点的索引 (M, 3)，bary 为对应的重心坐标 (M, 3)
    """
    face_index = np.empty(len(vectors), dtype=np.int64)
    bary = np.empty((len(vectors), 3))
    for start in range(0, len(vectors), BIN_CHUNK_SIZE):
        chunk = slice(start, start + BIN_CHUNK_SIZE)
        face_index[chunk], bary[chunk] = mesh.bin_vectors(vectors[chunk])

    valid = face_index >= 0
    vertex_bins = mesh.face_indices[np.where(valid, face_index, 0)]
    return valid, vertex_bins, bary


def bin_gradients(grads, hist_type, mesh):
    """
    将梯度向量分配到方向直方图的分箱

    参数:
    grads (np.ndarray): 梯度 (M, 3)，已旋转到关键点坐标系
    hist_type (str): 'icosahedron' 或 'spherical'
    mesh (Mesh): 二十面体网格（仅 'icosahedron' 使用）

    返回:
    tuple: (valid, bins, weights)
        valid (np.ndarray): 可以分箱的梯度掩码 (M,)
        bins (np.ndarray): 每个梯度对应的分箱索引 (M, K)
        weights (np.ndarray): 分箱权重，已乘以梯度幅值 (M, K)

    二十面体: 落入的三角面的三个顶点，按重心坐标加权（K = 3）
    球坐标: 方位角与极角的双线性插值（K = 4），方位角循环，
            极角越界时转到相对的方位角并取最后一行
    """
    mags = np.linalg.norm(grads, axis=1)

    if hist_type == 'icosahedron':
        valid, bins, bary = icosahedral_bins(grads, mesh)
        return valid, bins, mags[:, np.newaxis] * bary

    if hist_type == 'spherical':
        valid = mags >= FLT_EPSILON * 1e2
        safe_mags = np.where(valid, mags, 1.0)

        # 方位角 [0, 2π)，极角 [0, π]
        az = np.mod(np.arctan2(grads[:, 1], grads[:, 0]), 2 * math.pi)
        po = np.arccos(np.clip(grads[:, 2] / safe_mags, -1.0, 1.0))
        az_bins = az * NBINS_AZ / (2 * math.pi)
        po_bins = po * NBINS_PO / math.pi

        az_floor = np.floor(az_bins)
        po_floor = np.floor(po_bins)
        daz = az_bins - az_floor
        dpo = po_bins - po_floor

        bins = []
        weights = []
        for dp in (0, 1):
            for da in (0, 1):
                a = (az_floor.astype(np.int64) + da) % NBINS_AZ
                p = po_floor.astype(np.int64) + dp
                overflow = p >= NBINS_PO
                a = np.where(overflow, (a + NBINS_AZ // 2) % NBINS_AZ, a)
                p = np.where(overflow, NBINS_PO - 1, p)
                bins.append(a + p * NBINS_AZ)
                weights.append(mags * (daz if da else 1.0 - daz) * (dpo if dp else 1.0 - dpo))

        return valid, np.stack(bins, axis=1), np.stack(weights, axis=1)

    raise ValueError(f"未知的直方图类型: {hist_type}，可选值为 {HIST_TYPES}")


def accumulate_descriptor(vbins, grads, hist_type, mesh):
    """
    按空间三线性插值和方向插值累积 4x4x4 个方向直方图

    参数:
    vbins (np.ndarray): 连续空间分箱坐标 (M, 3)，范围 [0, NHIST_PER_DIM)
    grads (np.ndarray): 已加权并旋转的梯度 (M, 3)
    hist_type (str): 直方图类型
    mesh (Mesh): 二十面体网格

    返回:
    np.ndarray: 形状为 (64, H)，第 x + 4y + 16z 个直方图对应空间子区域 (x, y, z)
    """
    hists = np.zeros((DESC_NUM_TOTAL_HIST, hist_numel(hist_type)))

    valid, angle_bins, angle_weights = bin_gradients(grads, hist_type, mesh)
    vbins = vbins[valid]
    angle_bins = angle_bins[valid]
    angle_weights = angle_weights[valid]
    if len(vbins) == 0:
        return hists

    base = np.floor(vbins).astype(np.int64)
    frac = vbins - base

    for dx in (0, 1):
        for dy in (0, 1):
            for dz in (0, 1):
                cell = base + np.array([dx, dy, dz])
                inside = np.all(cell < NHIST_PER_DIM, axis=1)
                if not np.any(inside):
                    continue

                spatial_weight = ((frac[:, 0] if dx else 1.0 - frac[:, 0]) *
                                  (frac[:, 1] if dy else 1.0 - frac[:, 1]) *
                                  (frac[:, 2] if dz else 1.0 - frac[:, 2]))

                hist_index = (cell[:, 0] + cell[:, 1] * NHIST_PER_DIM +
                              cell[:, 2] * NHIST_PER_DIM * NHIST_PER_DIM)

                values = angle_weights[inside] * spatial_weight[inside, np.newaxis]
                rows = np.broadcast_to(hist_index[inside, np.newaxis], values.shape)
                np.add.at(hists, (rows.ravel(), angle_bins[inside].ravel()), values.ravel())

    return hists


def solid_angle_weight(hists):
    """按分箱的立体角对球坐标直方图重新加权（忽略常数因子）"""
    po = np.arange(NBINS_PO) * math.pi / NBINS_PO
    solid_angle = np.cos(po) - np.cos(po + math.pi / NBINS_PO)
    shaped = hists.reshape(hists.shape[:-1] + (NBINS_PO, NBINS_AZ))
    return (shaped / solid_angle[:, np.newaxis]).reshape(hists.shape)


def normalize_descriptor(values):
    """L2归一化（沿最后一维），分母加上 DBL_EPSILON 避免除零"""
    norm = np.sqrt(np.sum(values * values, axis=-1, keepdims=True)) + DBL_EPSILON
    return values / norm


def postprocess_descriptor(hists, hist_type, use_solid_angle_weight=False):
    """
    描述符后处理

    1. 可选的立体角加权（仅球坐标直方图）
    2. L2归一化
    3. 截断过大的分量，降低对非线性光照的敏感度
    4. 再次L2归一化
    """
    if use_solid_angle_weight and hist_type == 'spherical':
        hists = solid_angle_weight(hists)

    features = normalize_descriptor(hists.reshape(-1))
    features = np.minimum(features, trunc_thresh(hist_type))
    return normalize_descriptor(features)


def extract_descriptor(volume, keypoint, mesh, hist_type='icosahedron', use_solid_angle_weight=False):
    """
    为单个关键点计算SIFT3D描述符

    参数:
    volume (np.ndarray): 关键点所在的高斯金字塔层
    keypoint (dict): 已分配方向的关键点
    mesh (Mesh): 二十面体网格
    hist_type (str): 'icosahedron' 或 'spherical'
    use_solid_angle_weight (bool): 是否进行立体角加权

    返回:
    np.ndarray: 长度为 desc_numel(hist_type) 的特征向量

    计算步骤:
    1. 在半径为 2σ 的球形窗口中采样（σ = sd_rel * DESC_SIG_FCTR）
    2. 位移旋转到关键点坐标系 Rᵀd，映射到 4x4x4 的空间子区域，丢弃立方体外的点
    3. 梯度乘以高斯权重后旋转 Rᵀg
    4. 三线性插值累积到直方图，最后归一化与截断
    """
    sigma = keypoint['sd_rel'] * DESC_SIG_FCTR
    win_radius = DESC_RAD_FCTR * sigma
    desc_width = win_radius / math.sqrt(2)
    desc_hw = desc_width / 2.0
    desc_bin_fctr = NHIST_PER_DIM / desc_width

    center = (keypoint['xd'], keypoint['yd'], keypoint['zd'])
    R = keypoint['R']

    # 1. 球形窗口
    _, disp, sq_dist, grads = sphere_window(volume, center, win_radius)

    # 2. 旋转到关键点坐标系并计算空间分箱
    disp_kp = disp @ R
    vbins = (disp_kp + desc_hw) * desc_bin_fctr
    inside = np.all((vbins >= 0) & (vbins < NHIST_PER_DIM), axis=1)

    # 3. 高斯加权并旋转梯度
    weights = np.exp(-0.5 * sq_dist[inside] / (sigma * sigma))
    grads_kp = (grads[inside] * weights[:, np.newaxis]) @ R

    # 4. 累积与后处理
    hists = accumulate_descriptor(vbins[inside], grads_kp, hist_type, mesh)
    return postprocess_descriptor(hists, hist_type, use_solid_angle_weight)


def generate_descriptors(gaussian_pyramid, keypoints, mesh, hist_type='icosahedron',
                         use_solid_angle_weight=False):
    """
    为关键点列表计算描述符

    参数:
    gaussian_pyramid (Pyramid): 高斯金字塔
    keypoints (list): 已分配方向的关键点字典列表
    mesh (Mesh): 二十面体网格
    hist_type (str): 直方图类型
    use_solid_angle_weight (bool): 是否进行立体角加权

    返回:
    DescriptorStore: 与关键点一一对应的描述符，坐标为基础组坐标
    """
    num_features = desc_numel(hist_type)
    coords = np.zeros((len(keypoints), 3))
    scales = np.zeros(len(keypoints))
    features = np.zeros((len(keypoints), num_features))

    for i, keypoint in enumerate(keypoints):
        level = gaussian_pyramid.level(keypoint['o'], keypoint['s'])
        features[i] = extract_descriptor(level, keypoint, mesh, hist_type, use_solid_angle_weight)

        # 换算到基础组坐标
        coord_factor = 2.0 ** keypoint['o']
        coords[i] = (keypoint['xd'] * coord_factor,
                     keypoint['yd'] * coord_factor,
                     keypoint['zd'] * coord_factor)
        scales[i] = keypoint['sd']

    # 输入体数据的尺寸
    first_level = gaussian_pyramid.level(gaussian_pyramid.first_octave, gaussian_pyramid.first_level)
    shape = tuple(int(round(n * 2.0 ** gaussian_pyramid.first_octave)) for n in first_level.shape)

    logger.info(f"生成 {len(keypoints)} 个描述符，维数 {num_features}")
    return DescriptorStore(coords=coords, scales=scales, features=features, shape=shape)


def _dense_histograms_no_rotate(smoothed, mesh, sigma0):
    """每个体素的梯度方向按重心坐标写入12个通道，再对每个通道做高斯平滑"""
    nx, ny, nz = smoothed.shape
    temp = np.zeros((nx, ny, nz, ICOS_NVERT), dtype=np.float32)

    if min(nx, ny, nz) >= 3:
        volume = smoothed.astype(np.float64)
        grads = 0.5 * np.stack([
            volume[2:, 1:-1, 1:-1] - volume[:-2, 1:-1, 1:-1],
            volume[1:-1, 2:, 1:-1] - volume[1:-1, :-2, 1:-1],
            volume[1:-1, 1:-1, 2:] - volume[1:-1, 1:-1, :-2],
        ], axis=-1).reshape(-1, 3)

        valid, vertex_bins, bary = icosahedral_bins(grads, mesh)

        interior = np.zeros((grads.shape[0], ICOS_NVERT), dtype=np.float32)
        rows = np.nonzero(valid)[0]
        for j in range(3):
            interior[rows, vertex_bins[rows, j]] = bary[rows, j]
        temp[1:-1, 1:-1, 1:-1] = interior.reshape(nx - 2, ny - 2, nz - 2, ICOS_NVERT)

    sigma_win = sigma0 * DESC_SIG_FCTR / NHIST_PER_DIM
    descriptors = np.empty_like(temp)
    for c in range(ICOS_NVERT):
        descriptors[..., c] = gaussian_filter(temp[..., c], sigma=sigma_win,
                                              truncate=GAUSS_TRUNCATE, mode='nearest')
    return descriptors


def _dense_histograms_rotate(smoothed, mesh, sigma0, corner_thresh, sign_reference):
    """每个体素先分配方向（失败时用单位矩阵），再在旋转后的坐标系中累积一个直方图"""
    nx, ny, nz = smoothed.shape
    descriptors = np.zeros((nx, ny, nz, ICOS_NVERT), dtype=np.float32)
    identity = np.eye(3)

    ori_sigma = sigma0 * ORI_SIG_FCTR
    desc_sigma = sigma0 * DESC_SIG_FCTR / NHIST_PER_DIM
    win_radius = DESC_RAD_FCTR * desc_sigma
    num_rejected = 0

    for z in range(nz):
        for y in range(ny):
            for x in range(nx):
                center = (x + 0.5, y + 0.5, z + 0.5)

                status, R = assign_eig_orientation(smoothed, center, ori_sigma,
                                                   corner_thresh, sign_reference)
                if status is OrientationStatus.REJECTED:
                    R = identity
                    num_rejected += 1

                _, _, sq_dist, grads = sphere_window(smoothed, center, win_radius)
                valid, vertex_bins, bary = icosahedral_bins(grads @ R, mesh)

                # 幅值不受旋转影响
                weights = np.linalg.norm(grads, axis=1) * np.exp(-0.5 * sq_dist / (desc_sigma * desc_sigma))
                values = bary[valid] * weights[valid, np.newaxis]
                hist = np.zeros(ICOS_NVERT)
                np.add.at(hist, vertex_bins[valid].ravel(), values.ravel())
                descriptors[x, y, z] = hist

    logger.debug(f"稠密描述符: {num_rejected} 个体素使用默认方向")
    return descriptors


def extract_dense_descriptors(volume, mesh, sigma_n, sigma0, rotate=False,
                              corner_thresh=0.5, sign_reference='last'):
    """
    为每个体素计算一个二十面体方向直方图

    参数:
    volume (np.ndarray): 单通道输入体数据 (nx, ny, nz)
    mesh (Mesh): 二十面体网格
    sigma_n (float): 输入已有的模糊量
    sigma0 (float): 目标尺度
    rotate (bool): 是否为每个体素分配方向以获得旋转不变性（显著更慢）
    corner_thresh (float): rotate 为 True 时的角点阈值
    sign_reference (str): rotate 为 True 时的梯度符号参考策略

    返回:
    np.ndarray: 形状为 (nx, ny, nz, 12) 的描述符体数据，每个体素的直方图
                经过归一化、截断、再归一化后乘以该体素的输入强度
    """
    volume = np.asarray(volume)
    if volume.ndim != 3:
        raise ValueError(f"稠密描述符只支持单通道三维体数据，实际形状为 {volume.shape}")

    # 1. 从 sigma_n 平滑到 sigma0
    smoothed = smooth_volume(volume.astype(np.float32), math.sqrt(max(sigma0 ** 2 - sigma_n ** 2, 0.0)))

    # 2. 计算每个体素的直方图
    if rotate:
        descriptors = _dense_histograms_rotate(smoothed, mesh, sigma0, corner_thresh, sign_reference)
    else:
        descriptors = _dense_histograms_no_rotate(smoothed, mesh, sigma0)

    # 3. 后处理：归一化、截断、归一化、乘以输入强度
    hist_trunc = trunc_thresh('icosahedron') * desc_numel('icosahedron') / ICOS_NVERT
    hists = normalize_descriptor(descriptors.astype(np.float64))
    hists = np.minimum(hists, hist_trunc)
    hists = normalize_descriptor(hists)
    hists *= volume.astype(np.float64)[..., np.newaxis]

    return hists.astype(np.float32)
