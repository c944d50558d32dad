"""
Provider integration tests

Gateway behaviour against a fake aiohttp session: token handling,
endpoint fallbacks, upload and download.
"""
