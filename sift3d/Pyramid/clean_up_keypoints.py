import logging

import numpy as np

logger = logging.getLogger(__name__)

# [x, y, z, scale, R00, R01, ..., R22]
ORIENTATION_MATRIX_COLUMNS = 13


def convert_keypoints_to_input_volume_size(keypoints):
    """将关键点坐标换算到输入体数据（基础组）的坐标系

    参数:
    keypoints (list): 关键点字典列表

    返回:
    list: 新的字典列表，包含 'x', 'y', 'z'（基础组坐标）、'scale'（绝对尺度），
          以及存在时的旋转矩阵 'R'

    转换规则:
    坐标乘以 2^o，尺度 sd 已是绝对尺度，保持不变
    """
    converted_keypoints = []
    for keypoint in keypoints:
        factor = 2.0 ** keypoint['o']
        kp = {
            'x': keypoint['xd'] * factor,
            'y': keypoint['yd'] * factor,
            'z': keypoint['zd'] * factor,
            'scale': keypoint['sd'],
        }
        if 'R' in keypoint:
            kp['R'] = keypoint['R'].copy()
        converted_keypoints.append(kp)
    return converted_keypoints


def keypoints_to_matrix(keypoints):
    """导出关键点位置矩阵 (N, 3)，每行为第0组坐标下的 [x, y, z]"""
    converted = convert_keypoints_to_input_volume_size(keypoints)
    matrix = np.zeros((len(converted), 3), dtype=np.float64)
    for i, kp in enumerate(converted):
        matrix[i] = (kp['x'], kp['y'], kp['z'])
    return matrix


def keypoints_to_orientation_matrix(keypoints):
    """
    导出带方向的关键点矩阵

    参数:
    keypoints (list): 已分配方向的关键点字典列表

    返回:
    np.ndarray: 形状为 (N, 13)，每行为 [x, y, z, scale, R按行展开的9个元素]，
                坐标为基础组坐标
    """
    converted = convert_keypoints_to_input_volume_size(keypoints)
    matrix = np.zeros((len(converted), ORIENTATION_MATRIX_COLUMNS), dtype=np.float64)
    for i, kp in enumerate(converted):
        if 'R' not in kp:
            raise ValueError(f"第 {i} 个关键点没有方向")
        matrix[i, :4] = (kp['x'], kp['y'], kp['z'], kp['scale'])
        matrix[i, 4:] = kp['R'].reshape(9)
    return matrix


def orientation_matrix_to_keypoints(matrix):
    """
    从 (N, 13) 矩阵读取带方向的关键点

    参数:
    matrix (np.ndarray): keypoints_to_orientation_matrix 的输出格式

    返回:
    list: 字典列表，包含 'x', 'y', 'z', 'scale', 'R'
    """
    matrix = np.atleast_2d(np.asarray(matrix, dtype=np.float64))
    if matrix.ndim != 2 or matrix.shape[1] != ORIENTATION_MATRIX_COLUMNS:
        raise ValueError(f"带方向的关键点矩阵应有 {ORIENTATION_MATRIX_COLUMNS} 列，实际形状为 {matrix.shape}")

    keypoints = []
    for row in matrix:
        keypoints.append({
            'x': row[0],
            'y': row[1],
            'z': row[2],
            'scale': row[3],
            'R': row[4:].reshape(3, 3).copy(),
        })
    return keypoints
