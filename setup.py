import setuptools
from pathlib import Path

ROOT = Path(__file__).parent


def read_requirements(filename: str = "requirements.txt") -> list[str]:
    req_path = ROOT / filename
    if not req_path.exists():
        return []
    reqs: list[str] = []
    for line in req_path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        reqs.append(line)
    return reqs


setuptools.setup(
    name="keypool",
    version="0.1.0",
    description=(
        "2D max/average pooling kernels (generic window scan and offset-table "
        "fast path) over flat multi-channel feature maps, with a NumPy worker "
        "grid and an optional CuPy CUDA backend."
    ),
    license="Apache-2.0",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
    ],
    package_dir={"": "src"},
    packages=setuptools.find_packages(where="src"),
    python_requires=">=3.10",
    install_requires=read_requirements(),
    extras_require={
        "cuda": ["cupy"],
        "test": ["pytest"],
    },
    zip_safe=False,
)
