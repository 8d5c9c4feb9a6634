from .job import Job, JobItem
