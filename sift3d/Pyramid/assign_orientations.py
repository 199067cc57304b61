import logging
from enum import Enum

import numpy as np

logger = logging.getLogger(__name__)

# 方向窗口参数
ORI_SIG_FCTR = 1.5      # 高斯窗口的sigma与关键点尺度之比
ORI_RAD_FCTR = 3.0      # 窗口半径与sigma之比
ORI_GRAD_THRESH = 1e-10  # 窗口梯度平方范数的下限
MAX_EIG_RATIO = 0.90    # 相邻特征值之比的上限

# 梯度符号参考的可选策略
SIGN_REFERENCES = ('last', 'window')


class OrientationStatus(Enum):
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'


def sphere_window(volume, center, radius):
    """
    采样以center为中心、半径为radius的球形窗口中的体素及其梯度

    参数:
    volume (np.ndarray): 单层体数据 (nx, ny, nz)
    center (array-like): 连续坐标 (x, y, z)，体素 i 的中心为 i + 0.5
    radius (float): 窗口半径（体素单位）

    返回:
    tuple: (voxels, disp, sq_dist, grads)
        voxels (np.ndarray): 窗口内的体素索引 (M, 3)
        disp (np.ndarray): 体素中心相对center的位移 (M, 3)
        sq_dist (np.ndarray): 位移的平方长度 (M,)
        grads (np.ndarray): 中心差分梯度 (M, 3)
    体素按 z 最外层、x 最内层的顺序排列。窗口被限制在 [1, n-2] 内，
    保证中心差分的邻居都存在。
    """
    shape = volume.shape
    reach = int(radius + 0.5)

    ranges = []
    for axis in range(3):
        start = max(int(center[axis]) - reach, 1)
        end = min(int(center[axis]) + reach, shape[axis] - 2)
        ranges.append(np.arange(start, end + 1))

    # z 最外层，x 最内层
    gz, gy, gx = np.meshgrid(ranges[2], ranges[1], ranges[0], indexing='ij')
    voxels = np.stack([gx.ravel(), gy.ravel(), gz.ravel()], axis=1)

    disp = voxels + 0.5 - np.asarray(center, dtype=np.float64)
    sq_dist = np.einsum('ij,ij->i', disp, disp)
    inside = sq_dist <= radius * radius

    voxels = voxels[inside]
    disp = disp[inside]
    sq_dist = sq_dist[inside]
    grads = voxel_gradients(volume, voxels)

    return voxels, disp, sq_dist, grads


def voxel_gradients(volume, voxels):
    """中心差分梯度 0.5 * (f(x+1) - f(x-1))，voxels 形状为 (M, 3)"""
    px, py, pz = voxels[:, 0], voxels[:, 1], voxels[:, 2]
    volume = np.asarray(volume, dtype=np.float64)
    return 0.5 * np.stack([
        volume[px + 1, py, pz] - volume[px - 1, py, pz],
        volume[px, py + 1, pz] - volume[px, py - 1, pz],
        volume[px, py, pz + 1] - volume[px, py, pz - 1],
    ], axis=1)


def assign_eig_orientation(volume, center, sigma, corner_thresh, sign_reference='last'):
    """
    通过结构张量的特征向量为一个位置分配三维方向

    参数:
    volume (np.ndarray): 高斯金字塔中关键点所在层的体数据
    center (array-like): 连续坐标 (x, y, z)
    sigma (float): 高斯窗口的sigma（体素单位）
    corner_thresh (float): 特征向量与参考梯度夹角余弦绝对值的下限
    sign_reference (str): 'last' 使用窗口扫描顺序中最后一个体素的梯度，
                          'window' 使用窗口内的梯度之和

    返回:
    tuple: (status, R)
        status (OrientationStatus): ACCEPTED 或 REJECTED
        R (np.ndarray): 3x3 旋转矩阵，列向量为右手正交基；被拒绝时为 None

    异常:
    RuntimeError: 特征分解失败

    计算步骤:
    1. 在球形窗口内累积加权结构张量 A = Σ w g gᵀ 和窗口梯度 Σ g
    2. 窗口梯度过弱则拒绝
    3. 特征值必须互不相同：相邻特征值之比不超过 MAX_EIG_RATIO
    4. 前两个主特征向量与参考梯度的夹角要足够小，并翻转为正方向
    5. 第三列为前两列的叉积
    """
    if sign_reference not in SIGN_REFERENCES:
        raise ValueError(f"未知的梯度符号参考: {sign_reference}，可选值为 {SIGN_REFERENCES}")

    win_radius = sigma * ORI_RAD_FCTR

    # 1. 结构张量与窗口梯度
    _, _, sq_dist, grads = sphere_window(volume, center, win_radius)
    weights = np.exp(-0.5 * sq_dist / (sigma * sigma))
    tensor = (grads * weights[:, np.newaxis]).T @ grads
    window_grad = grads.sum(axis=0)

    # 2. 拒绝梯度过弱的位置
    if np.dot(window_grad, window_grad) < ORI_GRAD_THRESH:
        logger.debug("窗口梯度过弱，拒绝")
        return OrientationStatus.REJECTED, None

    # 3. 特征分解（特征值升序）
    try:
        eigenvalues, eigenvectors = np.linalg.eigh(tensor)
    except np.linalg.LinAlgError as e:
        raise RuntimeError(f"结构张量特征分解失败: {e}") from e

    order = np.argsort(np.abs(eigenvalues))
    eigenvalues = eigenvalues[order]
    eigenvectors = eigenvectors[:, order]

    if eigenvalues.shape[0] != 3 or np.any(eigenvalues == 0):
        logger.debug("特征值退化，拒绝")
        return OrientationStatus.REJECTED, None

    for i in range(2):
        if abs(eigenvalues[i] / eigenvalues[i + 1]) > MAX_EIG_RATIO:
            logger.debug(f"特征值之比过大 ({eigenvalues[i]:.4g} / {eigenvalues[i + 1]:.4g})，拒绝")
            return OrientationStatus.REJECTED, None

    # 4. 确定前两个特征向量的符号
    reference = grads[-1] if sign_reference == 'last' else window_grad
    reference_norm = np.linalg.norm(reference)
    if reference_norm == 0:
        logger.debug("参考梯度为零，拒绝")
        return OrientationStatus.REJECTED, None

    R = np.zeros((3, 3), dtype=np.float64)
    for i in range(2):
        # 按特征值降序取特征向量
        vr = eigenvectors[:, 2 - i].copy()
        d = np.dot(reference, vr)
        cos_ang = d / (np.linalg.norm(vr) * reference_norm)

        if abs(cos_ang) < corner_thresh:
            logger.debug(f"角点得分不足 (|cos| = {abs(cos_ang):.4f})，拒绝")
            return OrientationStatus.REJECTED, None

        if d <= 0:
            vr = -vr
        R[:, i] = vr

    # 5. 第三列
    R[:, 2] = np.cross(R[:, 0], R[:, 1])

    return OrientationStatus.ACCEPTED, R


def assign_orientations(gaussian_pyramid, keypoints, corner_thresh, sign_reference='last'):
    """
    为关键点列表分配方向，被拒绝的关键点按原顺序移除

    参数:
    gaussian_pyramid (Pyramid): 高斯金字塔
    keypoints (list): 已精化的关键点字典列表
    corner_thresh (float): 角点阈值
    sign_reference (str): 梯度符号参考策略

    返回:
    list: 分配了 'R' 的关键点列表（保持原有相对顺序）
    """
    oriented_keypoints = []
    for keypoint in keypoints:
        level = gaussian_pyramid.level(keypoint['o'], keypoint['s'])
        center = (keypoint['xd'], keypoint['yd'], keypoint['zd'])
        sigma = ORI_SIG_FCTR * keypoint['sd_rel']

        status, R = assign_eig_orientation(level, center, sigma, corner_thresh, sign_reference)
        if status is OrientationStatus.ACCEPTED:
            keypoint['R'] = R
            oriented_keypoints.append(keypoint)

    logger.info(f"方向分配: 保留 {len(oriented_keypoints)} / {len(keypoints)} 个关键点")
    return oriented_keypoints
