"""
Imagery Acquisition Pipeline

Fetch jobs flow from the job queue to the acquisition worker:
1. Token - Sentinel Hub OAuth2 client credentials
2. Fetch - Process API true-colour TIFF over the coordinate's bbox
3. Upload - Blob storage, then Image record and status updates
"""
