import os
import logging

import numpy as np

logger = logging.getLogger(__name__)

MATRIX_EXTENSIONS = ('.csv', '.csv.gz')


def _check_extension(path):
    if not path.lower().endswith(MATRIX_EXTENSIONS):
        raise ValueError(f"不支持的矩阵文件格式: {path}，可选 {MATRIX_EXTENSIONS}")


def write_matrix(path, matrix):
    """
    将二维矩阵写入 .csv 或 .csv.gz 文件（numpy 根据扩展名自动压缩）

    参数:
    path (str): 输出路径
    matrix (np.ndarray): 二维矩阵
    """
    _check_extension(path)
    matrix = np.atleast_2d(np.asarray(matrix, dtype=np.float64))

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    np.savetxt(path, matrix, delimiter=',', fmt='%.9g')
    logger.debug(f"写入矩阵 {path}: 形状 {matrix.shape}")


def read_matrix(path):
    """从 .csv 或 .csv.gz 文件读取二维矩阵"""
    _check_extension(path)
    matrix = np.loadtxt(path, delimiter=',', ndmin=2)
    logger.debug(f"读取矩阵 {path}: 形状 {matrix.shape}")
    return matrix
