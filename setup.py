from setuptools import find_packages, setup

setup(name="easy-rigid",
      version="1.0",
      description="Rigid point cloud registration with Coherent Point Drift and a non-iterative multi-trial search.",
      long_description=open("README.md").read(),
      packages=find_packages(exclude=["tests", "*.tests", "*.tests.*", "tests.*"]),
      python_requires=">=3.9.0",
      install_requires=["numpy>=1.25", "open3d>=0.14.1", "joblib>=1.0", "tqdm>=4.62.3", "tabulate>=0.8.9"],
      extras_require={"test": ["pytest>=6.2.3"]},
      package_data={"scripts": ["registration.ini"]},
      include_package_data=True,
      license='GPLv3',
      entry_points={"console_scripts": ["run = scripts.run_registration:main"]})
