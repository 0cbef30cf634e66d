'''
Lesson Sync Backend.

Keeps the teacher-side schedule and the student-side assignments of the
teaching relationship consistent, and runs the cascade deletion jobs.
'''
__version__ = "0.1.0"
