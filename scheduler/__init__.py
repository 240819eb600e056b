"""
예약 작업
"""
