import os
import sys
import logging
import argparse

import yaml

from sift3d.util.volume_loader import VolumeLoader
from sift3d.util.matrix_io import write_matrix
from sift3d.SIFT.extract_sift3d_features import SIFT3D, extract_sift3d_features
from sift3d.Pyramid.clean_up_keypoints import keypoints_to_orientation_matrix
from sift3d.Pyramid.find_extrema_voxel import visualize_keypoints
from sift3d.Matching.match_descriptor import (
    match_descriptors, match_descriptors_forward_backward, matches_to_matrices,
)

logger = logging.getLogger(__name__)


def setup_logging(level="INFO"):
    """配置根日志记录器：同时输出到 logs/sift3d.log 和控制台"""
    os.makedirs('logs', exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=[
            logging.FileHandler('logs/sift3d.log', encoding='utf-8'),
            logging.StreamHandler()
        ]
    )


def _load_yaml(path):
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def build_parser():
    ap = argparse.ArgumentParser(description="SIFT3D: detect, describe and match keypoints in two volumes")
    ap.add_argument("volume1", help="First volume (.npy, .npz, multi-page TIFF or slice folder)")
    ap.add_argument("volume2", help="Second volume")
    ap.add_argument("--config", default=None, help="YAML file with sift3d / matching / logging sections")
    ap.add_argument("--out-dir", default="output", help="Directory for the .csv.gz result matrices")
    ap.add_argument("--log-level", default=None, help="Override the logging level")

    # 检测器参数（覆盖配置文件）
    ap.add_argument("--first-octave", type=int, default=None)
    ap.add_argument("--peak-thresh", type=float, default=None)
    ap.add_argument("--corner-thresh", type=float, default=None)
    ap.add_argument("--num-octaves", type=int, default=None)
    ap.add_argument("--num-kp-levels", type=int, default=None)
    ap.add_argument("--sigma-n", type=float, default=None)
    ap.add_argument("--sigma0", type=float, default=None)
    ap.add_argument("--hist-type", choices=["icosahedron", "spherical"], default=None)
    ap.add_argument("--extrema-neighborhood", choices=["face", "cuboid"], default=None)
    ap.add_argument("--ori-sign-reference", choices=["last", "window"], default=None)
    ap.add_argument("--match-max-dist", type=float, default=None)

    # 匹配参数
    ap.add_argument("--nn-thresh", type=float, default=None, help="Nearest-neighbor ratio threshold")
    ap.add_argument("--no-forward-backward", action="store_true", help="Skip the reverse consistency check")
    ap.add_argument("--show", action="store_true", help="Plot the keypoints of both volumes")
    return ap


def make_sift3d(args, config):
    """合并配置文件与命令行参数，命令行优先"""
    options = dict(config.get('sift3d', {}) or {})
    for name in ('first_octave', 'peak_thresh', 'corner_thresh', 'num_octaves', 'num_kp_levels',
                 'sigma_n', 'sigma0', 'hist_type', 'extrema_neighborhood',
                 'ori_sign_reference', 'match_max_dist'):
        value = getattr(args, name)
        if value is not None:
            options[name] = value
    return SIFT3D.from_config(options)


def main(argv=None):
    """
    主函数：加载两个体数据，提取特征并匹配，结果写入 out_dir
    """
    args = build_parser().parse_args(argv)
    config = _load_yaml(args.config) if args.config else {}
    setup_logging(args.log_level or (config.get('logging') or {}).get('level', 'INFO'))

    matching = config.get('matching') or {}
    nn_thresh = args.nn_thresh if args.nn_thresh is not None else float(matching.get('nn_thresh', 0.8))
    forward_backward = not args.no_forward_backward and bool(matching.get('forward_backward', True))

    try:
        sift3d = make_sift3d(args, config)

        # ========== 提取特征 ==========
        results = []
        for index, path in enumerate((args.volume1, args.volume2), start=1):
            volume = VolumeLoader(path).get_volume()
            keypoints, descriptors = extract_sift3d_features(volume, sift3d)
            logger.info(f"体数据{index}: {len(keypoints)} 个关键点")

            write_matrix(os.path.join(args.out_dir, f"keys{index}.csv.gz"),
                         keypoints_to_orientation_matrix(keypoints))
            write_matrix(os.path.join(args.out_dir, f"desc{index}.csv.gz"), descriptors.to_matrix())

            if args.show:
                visualize_keypoints(volume, keypoints, f"Volume {index}")
            results.append(descriptors)

        # ========== 匹配 ==========
        descriptors1, descriptors2 = results
        match = match_descriptors_forward_backward if forward_backward else match_descriptors
        matches = match(descriptors1, descriptors2, nn_thresh, sift3d.match_max_dist)
        match1, match2 = matches_to_matrices(descriptors1, descriptors2, matches)

        write_matrix(os.path.join(args.out_dir, "match1.csv.gz"), match1)
        write_matrix(os.path.join(args.out_dir, "match2.csv.gz"), match2)
        logger.info(f"共 {len(match1)} 个匹配，结果保存在 {args.out_dir}")

    except (ValueError, RuntimeError, OSError) as e:
        logger.error(f"处理体数据时出错: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
