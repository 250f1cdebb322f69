from .camera import Camera
from .gaussian import PARAM_NAMES, GaussianSplats
from .scene import Dataset, init_model_from_pointcloud

__all__ = ['Dataset', 'GaussianSplats', "Camera", "PARAM_NAMES", "init_model_from_pointcloud"]
