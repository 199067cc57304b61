import os
import logging

import numpy as np
from PIL import Image, ImageSequence

logger = logging.getLogger(__name__)

SLICE_EXTENSIONS = ['.png', '.jpg', '.jpeg', '.tif', '.tiff', '.bmp']
TIFF_EXTENSIONS = ['.tif', '.tiff']


class VolumeLoader:
    """
    体数据加载器类，用于加载单个体数据文件或由二维切片组成的文件夹

    功能：
    1. 加载 .npy / .npz 数组文件
    2. 加载多页 TIFF 栈（每页为一个 z 切片）
    3. 加载文件夹中的切片图像，按文件名排序后沿 z 轴堆叠
    4. 统一转换为 float32 的单通道体数据，索引顺序为 [x, y, z]
    """
    def __init__(self, path):
        """
        初始化体数据加载器

        参数:
        path (str): 体数据文件路径或包含切片图像的文件夹路径
        """
        self.path = path
        self.volume_info = {}

        if os.path.isfile(path):
            self.volume = self._load_file(path)
        elif os.path.isdir(path):
            self.volume = self._load_slice_folder(path)
        else:
            raise ValueError(f"路径不存在或不是有效的文件/文件夹: {path}")

        self.volume_info.update({
            "path": path,
            "shape": self.volume.shape,
            "min": float(self.volume.min()),
            "max": float(self.volume.max()),
        })
        logger.info(f"加载体数据 {path}: 尺寸 {self.volume.shape}")

    def _load_file(self, file_path):
        """根据扩展名加载单个文件"""
        extension = os.path.splitext(file_path)[1].lower()

        if extension == '.npy':
            return self._as_volume(np.load(file_path), file_path)

        if extension == '.npz':
            with np.load(file_path) as archive:
                if len(archive.files) == 0:
                    raise ValueError(f"{file_path} 中没有数组")
                return self._as_volume(archive[archive.files[0]], file_path)

        if extension in TIFF_EXTENSIONS:
            with Image.open(file_path) as img:
                self.volume_info["format"] = img.format
                slices = [self._slice_to_array(frame) for frame in ImageSequence.Iterator(img)]
            return self._stack_slices(slices, file_path)

        raise ValueError(f"不支持的体数据格式: {file_path}")

    def _load_slice_folder(self, folder_path):
        """加载文件夹中的所有切片图像"""
        filenames = sorted(
            filename for filename in os.listdir(folder_path)
            if os.path.isfile(os.path.join(folder_path, filename))
            and os.path.splitext(filename)[1].lower() in SLICE_EXTENSIONS
        )
        if not filenames:
            raise ValueError(f"文件夹中没有切片图像: {folder_path}")

        slices = []
        for filename in filenames:
            with Image.open(os.path.join(folder_path, filename)) as img:
                slices.append(self._slice_to_array(img))

        self.volume_info["num_slices"] = len(slices)
        return self._stack_slices(slices, folder_path)

    @staticmethod
    def _slice_to_array(img):
        """将切片转为灰度数组，并转置为 [x, y] 索引"""
        if img.mode not in ('L', 'I', 'F', 'I;16', 'I;16B', 'I;16L'):
            img = img.convert('L')
        return np.asarray(img, dtype=np.float32).T

    @staticmethod
    def _stack_slices(slices, source):
        shapes = {s.shape for s in slices}
        if len(shapes) != 1:
            raise ValueError(f"{source} 中的切片尺寸不一致: {sorted(shapes)}")
        return np.stack(slices, axis=2)

    @staticmethod
    def _as_volume(array, source):
        array = np.asarray(array)
        if array.ndim == 4 and array.shape[3] == 1:
            array = array[..., 0]
        if array.ndim != 3:
            raise ValueError(f"{source} 不是单通道三维体数据，形状为 {array.shape}")
        return array.astype(np.float32)

    def get_volume(self):
        """返回加载的体数据 (nx, ny, nz)"""
        return self.volume

    def get_volume_info(self):
        """返回体数据的元数据"""
        return self.volume_info
