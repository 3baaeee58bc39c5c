"""CLIP ONNX embedding engine and its numeric helpers."""
