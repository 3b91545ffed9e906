"""
Image Watermarking Pipeline

Per task, strictly in order:
1. Load the image record (with its batch's watermark reference)
2. Fetch the raw image and watermark blobs
3. Composite and re-encode as JPEG
4. Store the result under processed/
5. Mark the record completed
"""
