"""
원격 서비스(Supabase) 연동
"""
