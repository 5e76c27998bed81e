"""Event pipeline: intake, validation, transformation, ERP sync, retry and reversal.

    webhook -> signature -> dedup -> validate -> transform -> Sage X3
                                        \\________ failed -> retry ________/

Components are assembled in ``pipeline.services``.
"""
