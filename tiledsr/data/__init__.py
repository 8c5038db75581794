from .image import as_rgba, extract_patch, load_image, save_image
