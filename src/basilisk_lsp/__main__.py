from basilisk_lsp.server import start

if __name__ == "__main__":  # pragma: no cover
    start()
