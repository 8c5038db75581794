import os
from setuptools import setup, find_packages


on_rtd = os.environ.get('READTHEDOCS') == 'True'
if on_rtd:
    install_requires = []
else:
    install_requires = [
        'torch',
        'numpy',
        'imageio',
        'colorlog',
        'tqdm',
        'scikit-image',
    ]

setup(
    name='tiledsr',
    version='0.1.0',
    description='Seam-free tiled super-resolution inference in PyTorch',
    author='tiledsr developers',
    license='MIT',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
    ],
    packages=find_packages(exclude=['scripts', 'tests', 'tests.*']),
    install_requires=install_requires,
    extras_require={
        'test': ['pytest'],
    },
    python_requires='>=3.8',
)
