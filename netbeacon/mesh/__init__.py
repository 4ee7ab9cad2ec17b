"""Building and writing the Linux WARP MDM enrollment file."""