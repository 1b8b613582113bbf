"""Download the Kokoro ONNX model and voices into podcast/kokoro-data."""

import os

import requests

RELEASE_URL = "https://github.com/thewh1teagle/kokoro-onnx/releases/download/model-files-v1.0"
FILES = ("kokoro-v1.0.onnx", "voices-v1.0.bin")


def download_file(url: str, path: str) -> None:
    print(f"[setup_kokoro] downloading {os.path.basename(path)}")
    response = requests.get(url, stream=True, timeout=60)
    response.raise_for_status()

    tmp_path = f"{path}.part"
    with open(tmp_path, "wb") as file:
        for data in response.iter_content(1024 * 64):
            file.write(data)
    os.replace(tmp_path, path)
    print(f"[setup_kokoro] saved {path}")


def setup_kokoro() -> None:
    base_dir = os.path.dirname(os.path.abspath(__file__))
    target_dir = os.path.join(base_dir, "podcast", "kokoro-data")
    os.makedirs(target_dir, exist_ok=True)

    for name in FILES:
        path = os.path.join(target_dir, name)
        if os.path.exists(path):
            print(f"[setup_kokoro] {name} already exists")
            continue
        download_file(f"{RELEASE_URL}/{name}", path)


if __name__ == "__main__":
    setup_kokoro()
