from setuptools import setup

package_name = 'trajopt_collision'

setup(
    name=package_name,
    version='0.1.0',
    packages=[package_name],
    package_dir={package_name: f'src/{package_name}'},
    install_requires=['setuptools', 'numpy', 'scipy', 'pin', 'matplotlib'],
    extras_require={
        'test': ['pytest'],
    },
    zip_safe=True,
    maintainer='root',
    maintainer_email='franche1984@gmail.com',
    description='Collision-aware costs and constraints for trust-region trajectory optimization',
    license='MIT',
    tests_require=['pytest'],
    entry_points={
        'console_scripts': [],
    },
)
