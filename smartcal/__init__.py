"""
smartcal: 自然语言日历后端
"""
