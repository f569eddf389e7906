"""
routes — the four page/action routers.

Sub-modules:
    page — timeline, profile, join form, hashtag search  (mounted at /)
    auth — join, login, logout                           (mounted at /auth)
    post — image upload, new post                        (mounted at /post)
    user — follow                                        (mounted at /user)
"""
