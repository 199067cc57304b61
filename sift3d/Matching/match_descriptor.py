import logging

import numpy as np
import cv2

logger = logging.getLogger(__name__)

# 没有第二近邻时使用的距离
NO_SECOND_NEIGHBOR = 1e30


def match_descriptors(descriptors1, descriptors2, nn_thresh=0.8, max_dist=None):
    """
    使用暴力匹配器（平方欧氏距离）匹配两组描述符，并应用最近邻比值检验

    参数:
        descriptors1 (DescriptorStore): 第一组描述符
        descriptors2 (DescriptorStore): 第二组描述符
        nn_thresh (float): 最近邻与次近邻距离之比的阈值（默认0.8）
        max_dist (float): 可选，匹配点之间的最大空间距离，
                          以第一组体数据对角线长度的比例表示

    返回:
        np.ndarray: 长度为 len(descriptors1) 的整数数组，
                    第 i 个元素为匹配到的第二组索引，-1 表示没有匹配
    """
    matches = np.full(len(descriptors1), -1, dtype=np.int64)
    if len(descriptors1) == 0 or len(descriptors2) == 0:
        return matches

    # 初始化暴力匹配器，距离为平方欧氏距离
    matcher = cv2.BFMatcher(cv2.NORM_L2SQR)

    # 进行KNN匹配
    knn_matches = matcher.knnMatch(
        np.ascontiguousarray(descriptors1.features, dtype=np.float32),
        np.ascontiguousarray(descriptors2.features, dtype=np.float32),
        k=2,
    )

    # 体数据对角线长度
    diagonal = float(np.linalg.norm(np.asarray(descriptors1.shape, dtype=np.float64)))

    for candidates in knn_matches:
        if len(candidates) == 0:
            continue
        best = candidates[0]
        second_distance = candidates[1].distance if len(candidates) > 1 else NO_SECOND_NEIGHBOR

        # 应用比值检验（平方距离，因此阈值也取平方）
        if best.distance > nn_thresh * nn_thresh * second_distance:
            continue

        # 应用空间距离检验
        if max_dist is not None:
            displacement = descriptors1.coords[best.queryIdx] - descriptors2.coords[best.trainIdx]
            if np.linalg.norm(displacement) > max_dist * diagonal:
                continue

        matches[best.queryIdx] = best.trainIdx

    logger.debug(f"比值检验后保留 {np.count_nonzero(matches >= 0)} / {len(matches)} 个匹配")
    return matches


def match_descriptors_forward_backward(descriptors1, descriptors2, nn_thresh=0.8, max_dist=None):
    """
    双向匹配：只保留 i -> j 且 j -> i 的匹配

    参数与返回值同 match_descriptors
    """
    forward = match_descriptors(descriptors1, descriptors2, nn_thresh, max_dist)
    backward = match_descriptors(descriptors2, descriptors1, nn_thresh, max_dist)

    matches = np.full(len(forward), -1, dtype=np.int64)
    for i, j in enumerate(forward):
        if j >= 0 and backward[j] == i:
            matches[i] = j

    logger.info(f"双向匹配: {np.count_nonzero(matches >= 0)} 个匹配")
    return matches


def matches_to_matrices(descriptors1, descriptors2, matches):
    """
    将匹配结果转换为两个对应的坐标矩阵

    参数:
        descriptors1 (DescriptorStore): 第一组描述符
        descriptors2 (DescriptorStore): 第二组描述符
        matches (np.ndarray): match_descriptors 的输出

    返回:
        tuple: (match1, match2)，形状均为 (M, 3)，第 k 行互相对应
    """
    matches = np.asarray(matches)
    if len(matches) != len(descriptors1):
        raise ValueError(f"匹配数组长度 {len(matches)} 与描述符数量 {len(descriptors1)} 不一致")

    matched = np.nonzero(matches >= 0)[0]
    match1 = descriptors1.coords[matched].copy()
    match2 = descriptors2.coords[matches[matched]].copy()
    return match1, match2
