"""Application services for the scaffolding pipeline."""
