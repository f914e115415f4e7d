# covid_ude/utils/seed.py
import zlib
import jax.random as jr

def location_key(seed: int, location: str):
    # same seed, different locations -> independent but reproducible keys
    return jr.fold_in(jr.PRNGKey(seed), zlib.crc32(location.encode()) & 0x7FFFFFFF)
