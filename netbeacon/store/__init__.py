"""SQLite-backed store-and-forward buffer with eviction and cursor-based replay."""