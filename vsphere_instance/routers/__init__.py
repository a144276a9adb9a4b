"""HTTP routers for the vSphere instance plugin"""
