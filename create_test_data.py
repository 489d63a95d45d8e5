#!/usr/bin/env python3
"""
Create a test roster spreadsheet for the team selection portal.

The file can be uploaded through the admin roster endpoint to pre-register
students in both batches.
"""
import argparse

import pandas as pd
from faker import Faker

from team_logic import BATCHES

ROLL_PREFIX = '142223128'


def create_roster(students_per_batch=30, seed=None):
    """Build a roster DataFrame with realistic names and institution roll numbers."""
    fake = Faker('en_IN')  # Indian locale for better names
    if seed is not None:
        Faker.seed(seed)

    students_data = []
    serial = 1
    for batch in BATCHES:
        for _ in range(students_per_batch):
            students_data.append({
                'Roll No': f"{ROLL_PREFIX}{str(serial).zfill(3)}",
                'Name': fake.name().upper(),
                'Batch': batch,
            })
            serial += 1

    return pd.DataFrame(students_data)


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument('--per-batch', type=int, default=30)
    parser.add_argument('--seed', type=int, default=None)
    parser.add_argument('--output', default='students_roster.xlsx')
    args = parser.parse_args()

    df = create_roster(args.per_batch, args.seed)
    df.to_excel(args.output, index=False, engine='openpyxl')

    print(f"✅ Roster created: '{args.output}'")
    print(f"📊 Total Students: {len(df)}")
    for batch, count in df['Batch'].value_counts().sort_index().items():
        print(f"   Batch {batch}: {count} students")


if __name__ == "__main__":
    main()
