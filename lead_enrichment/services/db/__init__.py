# Database access (Supabase PostgREST)
