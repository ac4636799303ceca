import subprocess


def start():
    cmd = ';'.join(
        [
            "echo Flake8:",
            'flake8 bundler_middleware tests',
            "echo Mypy:",
            'mypy bundler_middleware'
        ])
    subprocess.run(cmd, shell=True)


if __name__ == "__main__":
    start()
