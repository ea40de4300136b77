"""
Setup script for the IMU preintegration package.
"""
from setuptools import setup, find_packages
import os

# Read version from __init__.py
def read_version():
    with open(os.path.join('imu_preint', '__init__.py'), 'r') as f:
        for line in f:
            if line.startswith('__version__'):
                return line.split('=')[1].strip().strip('"').strip("'")
    return '0.1.0'

# Read long description from README
def read_readme():
    if os.path.exists('README.md'):
        with open('README.md', 'r', encoding='utf-8') as f:
            return f.read()
    return ''

setup(
    name='imu-preint',
    version=read_version(),
    author='IMU_PREINT Development Team',
    description='On-manifold IMU preintegration for factor-graph state estimation',
    long_description=read_readme(),
    long_description_content_type='text/markdown',
    packages=find_packages(include=['imu_preint', 'imu_preint.*']),
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Science/Research',
        'Topic :: Scientific/Engineering',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
    ],
    python_requires='>=3.8',
    install_requires=[
        'numpy>=1.20.0',
        'scipy>=1.7.0',
        'pyyaml>=5.4.0',
    ],
    extras_require={
        'dev': [
            'pytest>=6.2.0',
            'pytest-cov>=2.11.0',
            'black>=21.0',
            'flake8>=3.9.0',
            'mypy>=0.910',
        ],
    },
    include_package_data=True,
    package_data={
        'imu_preint': ['config/*.yaml'],
    },
    zip_safe=False,
)
