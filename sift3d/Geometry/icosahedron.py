import math
import logging

import numpy as np

logger = logging.getLogger(__name__)

# 黄金分割比，正二十面体顶点模板的参数
GOLDEN_RATIO = (1.0 + math.sqrt(5.0)) / 2.0

ICOS_NVERT = 12
ICOS_NFACES = 20

# 重心坐标的数值容差（单精度机器精度的10倍）
FLT_EPSILON = float(np.finfo(np.float32).eps)
BARY_EPS = FLT_EPSILON * 10

_ICOS_VERTICES = np.array([
    [0, 1, GOLDEN_RATIO],
    [0, -1, GOLDEN_RATIO],
    [0, 1, -GOLDEN_RATIO],
    [0, -1, -GOLDEN_RATIO],
    [1, GOLDEN_RATIO, 0],
    [-1, GOLDEN_RATIO, 0],
    [1, -GOLDEN_RATIO, 0],
    [-1, -GOLDEN_RATIO, 0],
    [GOLDEN_RATIO, 0, 1],
    [-GOLDEN_RATIO, 0, 1],
    [GOLDEN_RATIO, 0, -1],
    [-GOLDEN_RATIO, 0, -1],
], dtype=np.float64)

_ICOS_FACES = np.array([
    [0, 1, 8], [0, 8, 4], [0, 4, 5], [0, 5, 9], [0, 9, 1],
    [1, 6, 8], [8, 6, 10], [8, 10, 4], [4, 10, 2], [4, 2, 5],
    [5, 2, 11], [5, 11, 9], [9, 11, 7], [9, 7, 1], [1, 7, 6],
    [3, 6, 7], [3, 7, 11], [3, 11, 2], [3, 2, 10], [3, 10, 6],
], dtype=np.int64)


def cart2bary(cart, triangle):
    """
    计算从原点出发、沿cart方向的射线与三角形所在平面交点的重心坐标

    参数:
    cart (np.ndarray): 笛卡尔坐标向量，形状为 (3,)
    triangle (np.ndarray): 三角形的三个顶点，形状为 (3, 3)，每行一个顶点

    返回:
    tuple: (bary, k)，bary为重心坐标 (3,)，k为射线参数，满足
           k * cart = bary[0]*v0 + bary[1]*v1 + bary[2]*v2；
           当射线与平面近似平行时返回 None

    计算原理（Möller–Trumbore 求交）:
    e1 = v1 - v0, e2 = v2 - v0
    p = cart × e2, det = e1·p
    t = -v0, q = t × e1
    bary.y = t·p / det, bary.z = cart·q / det, bary.x = 1 - bary.y - bary.z
    k = e2·q / det
    """
    cart = np.asarray(cart, dtype=np.float64)
    v0, v1, v2 = np.asarray(triangle, dtype=np.float64)

    e1 = v1 - v0
    e2 = v2 - v0
    p = np.cross(cart, e2)
    det = np.dot(e1, p)

    # 射线与平面近似平行，数值不稳定
    if abs(det) < BARY_EPS:
        return None

    t = -v0
    q = np.cross(t, e1)

    by = np.dot(t, p) / det
    bz = np.dot(cart, q) / det
    bx = 1.0 - by - bz
    k = np.dot(e2, q) / det

    return np.array([bx, by, bz]), k


class Mesh:
    """
    单位球内接正二十面体网格，用于梯度方向的旋转不变直方图分箱

    属性:
    vertices (np.ndarray): 12个单位长度顶点，形状为 (12, 3)
    face_indices (np.ndarray): 每个面的三个顶点索引，形状为 (20, 3)
    face_vertices (np.ndarray): 每个面的三个顶点坐标，形状为 (20, 3, 3)

    构建完成后只读，由检测器创建一次并共享。
    """

    def __init__(self):
        # 1. 顶点归一化到单位球面
        norms = np.linalg.norm(_ICOS_VERTICES, axis=1)
        assert np.allclose(norms, math.sqrt(1.0 + GOLDEN_RATIO ** 2))
        self.vertices = _ICOS_VERTICES / norms[:, np.newaxis]

        # 2. 构建每个面，保证法向量朝外
        face_indices = _ICOS_FACES.copy()
        for i in range(ICOS_NFACES):
            v0, v1, v2 = self.vertices[face_indices[i]]
            normal = np.cross(v2 - v1, v1 - v0)
            if np.dot(normal, v0) < 0:
                # 交换前两个顶点
                face_indices[i, [0, 1]] = face_indices[i, [1, 0]]

        self.face_indices = face_indices
        self.face_vertices = self.vertices[face_indices]

        # 3. 预计算批量求交需要的量
        v0 = self.face_vertices[:, 0]
        self._e1 = self.face_vertices[:, 1] - v0
        self._e2 = self.face_vertices[:, 2] - v0
        self._t = -v0
        self._q = np.cross(self._t, self._e1)

        self._check_geometry()
        logger.debug(f"二十面体网格构建完成: {ICOS_NVERT} 个顶点, {ICOS_NFACES} 个面")

    def _check_geometry(self):
        """检查网格的几何不变量：单位长度、法向朝外、等边"""
        assert np.allclose(np.linalg.norm(self.vertices, axis=1), 1.0)
        for v0, v1, v2 in self.face_vertices:
            normal = np.cross(v2 - v1, v1 - v0)
            assert np.dot(normal, v0) > 0
            edges = [np.linalg.norm(v1 - v0), np.linalg.norm(v2 - v1), np.linalg.norm(v0 - v2)]
            assert max(edges) - min(edges) < 1e-9

    def bin_for_vector(self, vector):
        """
        查找向量所穿过的面及其重心坐标

        参数:
        vector (np.ndarray): 方向向量，形状为 (3,)

        返回:
        tuple: (face_index, bary)；向量过短时返回 None
        """
        vector = np.asarray(vector, dtype=np.float64)

        # 过短的向量没有可靠的方向
        if np.dot(vector, vector) < BARY_EPS:
            return None

        for face_index in range(ICOS_NFACES):
            result = cart2bary(vector, self.face_vertices[face_index])
            if result is None:
                continue
            bary, k = result
            if np.any(bary < -BARY_EPS) or k < 0:
                continue
            return face_index, bary

        # 非零向量必然与某个面相交
        raise AssertionError(f"向量 {vector} 未与任何面相交")

    def bin_vectors(self, vectors):
        """
        bin_for_vector 的批量版本

        参数:
        vectors (np.ndarray): 形状为 (N, 3) 的向量数组

        返回:
        tuple: (face_index, bary)
            face_index (np.ndarray): 形状为 (N,)，无效向量为 -1
            bary (np.ndarray): 形状为 (N, 3)，无效向量为 0
        """
        vectors = np.asarray(vectors, dtype=np.float64).reshape(-1, 3)
        n = vectors.shape[0]

        # (N, 20, 3)
        p = np.cross(vectors[:, np.newaxis, :], self._e2[np.newaxis, :, :])
        det = np.einsum('fk,nfk->nf', self._e1, p)
        stable = np.abs(det) >= BARY_EPS
        safe_det = np.where(stable, det, 1.0)

        by = np.einsum('fk,nfk->nf', self._t, p) / safe_det
        bz = (vectors @ self._q.T) / safe_det
        bx = 1.0 - by - bz
        k = np.einsum('fk,fk->f', self._e2, self._q)[np.newaxis, :] / safe_det

        hit = (stable & (bx >= -BARY_EPS) & (by >= -BARY_EPS) &
               (bz >= -BARY_EPS) & (k >= 0))

        # 取第一个相交的面，与逐面遍历的顺序一致
        face_index = np.argmax(hit, axis=1)
        found = hit[np.arange(n), face_index]
        valid = found & (np.einsum('nk,nk->n', vectors, vectors) >= BARY_EPS)

        rows = np.arange(n)
        bary = np.stack([bx[rows, face_index], by[rows, face_index], bz[rows, face_index]], axis=1)
        bary[~valid] = 0.0
        face_index = np.where(valid, face_index, -1)

        return face_index, bary
