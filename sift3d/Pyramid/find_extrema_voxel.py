import math
import logging

import numpy as np
import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)

# 支持的邻域类型
NEIGHBORHOODS = ('face', 'cuboid')

# 亚体素精化的最大迭代次数
MAX_REFINE_ITERATIONS = 5

DBL_EPSILON = float(np.finfo(np.float64).eps)


def _neighbor_offsets(neighborhood, include_center):
    """生成邻域偏移量列表"""
    if neighborhood == 'face':
        offsets = [(1, 0, 0), (-1, 0, 0), (0, 1, 0), (0, -1, 0), (0, 0, 1), (0, 0, -1)]
    elif neighborhood == 'cuboid':
        offsets = [(dx, dy, dz)
                   for dz in (-1, 0, 1) for dy in (-1, 0, 1) for dx in (-1, 0, 1)
                   if (dx, dy, dz) != (0, 0, 0)]
    else:
        raise ValueError(f"未知的邻域类型: {neighborhood}，可选值为 {NEIGHBORHOODS}")

    if include_center:
        offsets.append((0, 0, 0))
    return offsets


def _shifted_interior(volume, offset):
    """取内部区域 [1, n-2] 沿 offset 平移后的视图"""
    nx, ny, nz = volume.shape
    dx, dy, dz = offset
    return volume[1 + dx:nx - 1 + dx, 1 + dy:ny - 1 + dy, 1 + dz:nz - 1 + dz]


def find_local_extrema_mask(prev_level, cur_level, next_level, threshold, neighborhood='face'):
    """
    判断当前层每个内部体素是否是尺度空间中的极值点（严格极大值或极小值）

    参数:
    prev_level (np.ndarray): 下一尺度的DoG体数据（s - 1）
    cur_level (np.ndarray): 当前尺度的DoG体数据（s）
    next_level (np.ndarray): 上一尺度的DoG体数据（s + 1）
    threshold (float): 绝对值阈值
    neighborhood (str): 'face'（6邻域）或 'cuboid'（26邻域）

    返回:
    np.ndarray: 内部区域的布尔掩码，形状为 (nx-2, ny-2, nz-2)

    判断逻辑:
    1. 中心体素的绝对值必须超过阈值
    2. 同层只与邻域比较；相邻两层还要与同位置的体素比较
    3. 所有比较都是严格的，平台区域不会产生极值
    """
    center = _shifted_interior(cur_level, (0, 0, 0))
    same_level_offsets = _neighbor_offsets(neighborhood, include_center=False)
    adjacent_level_offsets = _neighbor_offsets(neighborhood, include_center=True)

    is_max = center > threshold
    is_min = center < -threshold

    for offset in same_level_offsets:
        neighbor = _shifted_interior(cur_level, offset)
        is_max &= center > neighbor
        is_min &= center < neighbor

    for level in (prev_level, next_level):
        for offset in adjacent_level_offsets:
            neighbor = _shifted_interior(level, offset)
            is_max &= center > neighbor
            is_min &= center < neighbor

    return is_max | is_min


def find_scale_space_extrema(dog_pyramid, peak_thresh, neighborhood='face'):
    """
    在DoG金字塔中检测尺度空间极值点

    参数:
    dog_pyramid (Pyramid): DoG金字塔
    peak_thresh (float): 相对阈值，乘以每层的最大绝对响应
    neighborhood (str): 'face' 或 'cuboid'

    返回:
    list: 关键点字典列表，包含 'o', 's', 'xi', 'yi', 'zi'，
          按 组/层/z/y/x 的顺序排列
    """
    if dog_pyramid.num_levels < 3:
        raise ValueError(f"极值检测要求每组至少3层DoG，当前只有 {dog_pyramid.num_levels} 层")

    keypoints = []
    s_start = dog_pyramid.first_level + 1
    s_end = dog_pyramid.last_level - 1

    for o, _ in dog_pyramid.octaves():
        for s in range(s_start, s_end + 1):
            prev_level = dog_pyramid.level(o, s - 1)
            cur_level = dog_pyramid.level(o, s)
            next_level = dog_pyramid.level(o, s + 1)

            if min(cur_level.shape) < 3:
                continue

            # 1. 根据当前层的最大绝对响应调整阈值
            dogmax = float(np.max(np.abs(cur_level)))
            threshold = peak_thresh * dogmax

            # 2. 比较邻域
            mask = find_local_extrema_mask(prev_level, cur_level, next_level,
                                           threshold, neighborhood)

            # 3. 按 z, y, x 顺序（x变化最快）收集候选点
            xs, ys, zs = np.nonzero(mask)
            order = np.lexsort((xs, ys, zs))
            for index in order:
                keypoints.append({
                    'o': o,
                    's': s,
                    'xi': int(xs[index]) + 1,
                    'yi': int(ys[index]) + 1,
                    'zi': int(zs[index]) + 1,
                })

            logger.debug(f"组 {o} 层 {s}: 阈值 {threshold:.6g}, 候选点 {len(order)} 个")

    logger.info(f"检测到 {len(keypoints)} 个候选极值点")
    return keypoints


def parabola_vertex_offset(f_minus, f_center, f_plus):
    """
    通过三个等间距采样点拟合抛物线，返回顶点相对中心采样点的偏移

    参数:
    f_minus, f_center, f_plus (float): 位置 -1, 0, +1 处的函数值

    返回:
    float: 顶点偏移，曲率为零时返回 0

    数学原理:
    f(t) = a t² + b t + c
    a = (f₋ - 2f₀ + f₊) / 2, b = (f₊ - f₋) / 2
    t* = -b / (2a) = 0.5 (f₋ - f₊) / (f₋ - 2f₀ + f₊)
    """
    curvature = f_minus - 2.0 * f_center + f_plus
    if abs(curvature) < DBL_EPSILON:
        return 0.0
    return 0.5 * (f_minus - f_plus) / curvature


def localize_extremum_via_parabola_fit(dog_pyramid, keypoint):
    """
    通过逐轴抛物线拟合将关键点精确定位到亚体素精度

    参数:
    dog_pyramid (Pyramid): DoG金字塔
    keypoint (dict): 包含 'o', 's', 'xi', 'yi', 'zi' 的关键点（原地更新）

    返回:
    dict: 更新后的关键点，新增 'xd', 'yd', 'zd', 'sd', 'sd_rel'

    坐标约定:
    体素 i 的中心位于连续坐标 i + 0.5。层索引 s 保持不变，
    尺度在相邻两层的尺度之间截断。
    """
    o = keypoint['o']
    s = keypoint['s']
    prev_level = dog_pyramid.level(o, s - 1)
    cur_level = dog_pyramid.level(o, s)
    next_level = dog_pyramid.level(o, s + 1)

    shape = cur_level.shape
    lower = 1.0
    upper = np.array(shape, dtype=np.float64) - 2.0
    smin = dog_pyramid.scale(o, s - 1)
    smax = dog_pyramid.scale(o, s + 1)

    voxel = [keypoint['xi'], keypoint['yi'], keypoint['zi']]
    coords = [v + 0.5 for v in voxel]
    offset_s = 0.0

    for _ in range(MAX_REFINE_ITERATIONS):
        x, y, z = voxel
        center = float(cur_level[x, y, z])

        # 1. 空间三个方向的抛物线顶点
        offsets = (
            parabola_vertex_offset(float(cur_level[x - 1, y, z]), center, float(cur_level[x + 1, y, z])),
            parabola_vertex_offset(float(cur_level[x, y - 1, z]), center, float(cur_level[x, y + 1, z])),
            parabola_vertex_offset(float(cur_level[x, y, z - 1]), center, float(cur_level[x, y, z + 1])),
        )

        # 2. 尺度方向的抛物线顶点
        offset_s = parabola_vertex_offset(float(prev_level[x, y, z]), center, float(next_level[x, y, z]))

        # 3. 更新连续坐标并截断到非边界区域
        coords = [min(max(voxel[axis] + 0.5 + offsets[axis], lower), upper[axis])
                  for axis in range(3)]
        new_voxel = [int(math.floor(c)) for c in coords]

        # 4. 体素不再移动时收敛
        if new_voxel == voxel:
            break
        voxel = new_voxel

    sd = min(max(dog_pyramid.scale(o, s + offset_s), smin), smax)

    keypoint['xi'], keypoint['yi'], keypoint['zi'] = voxel
    keypoint['xd'], keypoint['yd'], keypoint['zd'] = coords
    keypoint['sd'] = sd
    keypoint['sd_rel'] = sd * 2.0 ** (-o)
    return keypoint


def refine_keypoints(dog_pyramid, keypoints):
    """将所有候选点精化到亚体素精度，不剔除任何关键点"""
    for keypoint in keypoints:
        localize_extremum_via_parabola_fit(dog_pyramid, keypoint)
    return keypoints


def visualize_keypoints(volume, keypoints, title="SIFT3D keypoints", show=True):
    """
    在体数据的最大强度投影（沿z轴）上可视化关键点

    参数:
    volume (np.ndarray): 输入体数据 (nx, ny, nz)
    keypoints (list): 关键点字典列表（需包含 'xd', 'yd', 'o', 'sd'）
    title (str): 图像标题
    show (bool): 是否阻塞显示窗口

    返回:
    matplotlib.figure.Figure: 创建的图像
    """
    projection = np.max(np.asarray(volume), axis=2)

    fig = plt.figure(figsize=(10, 8))
    ax = fig.add_subplot(1, 1, 1)
    ax.imshow(projection.T, cmap='gray', origin='lower')

    for kp in keypoints:
        # 换算到输入体数据坐标
        factor = 2.0 ** kp['o']
        x = kp['xd'] * factor
        y = kp['yd'] * factor
        circle = plt.Circle((x, y), kp['sd'], color='r', fill=False, linewidth=1.0)
        ax.add_patch(circle)
        ax.plot(x, y, 'r.', markersize=3)

    ax.set_title(f"{title} - {len(keypoints)} keypoints")
    ax.axis('off')
    fig.tight_layout()

    if show:
        plt.show(block=True)

    return fig
