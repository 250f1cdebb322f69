from .rasterizer import GaussianRasterizer, RenderOutput

__all__ = ["GaussianRasterizer", "RenderOutput"]
