from koi.koi_cli import entrypoint

if __name__ == "__main__":
    entrypoint()
